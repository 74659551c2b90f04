"""
Prefix routing table for the dev server.

Rules are scanned in the order they were declared and the first rule whose
prefix is a literal prefix of the request path wins. Prefixes are not
segment-aware: ``/api`` also matches ``/apiary``. Callers that configure
overlapping prefixes must therefore list the more specific one first.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

from devproxy import vars as settings
from devproxy.router.errors import ConfigError

logger = logging.getLogger("uvicorn.error")

ALLOWED_SCHEMES = {"http", "https"}


@dataclass(frozen=True)
class RouteRule:
    path_prefix: str
    target_origin: str
    change_origin: bool = True


@dataclass(frozen=True)
class Local:
    """Serve the request from the local asset directories."""


@dataclass(frozen=True)
class Forward:
    target_origin: str
    rewritten_headers: Mapping[str, str]
    rule: RouteRule = field(compare=False)


Decision = Union[Local, Forward]

LOCAL = Local()


def _validate_origin(origin: str) -> str:
    if not isinstance(origin, str) or not origin:
        raise ConfigError(f"Target origin must be a non-empty URI, got {origin!r}")
    try:
        parts = urlsplit(origin)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"Target origin {origin!r} is not a valid URI: {e}") from e
    if parts.scheme not in ALLOWED_SCHEMES:
        raise ConfigError(
            f"Target origin {origin!r} must use one of {sorted(ALLOWED_SCHEMES)}"
        )
    if not parts.hostname:
        raise ConfigError(f"Target origin {origin!r} has no host")
    if parts.username or parts.password:
        raise ConfigError(f"Target origin {origin!r} must not carry credentials")
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise ConfigError(
            f"Target origin {origin!r} must be scheme://host[:port] without a path"
        )
    if port is not None and port == 0:
        raise ConfigError(f"Target origin {origin!r} has an invalid port")
    return f"{parts.scheme}://{parts.netloc}"


def _validate_rule(rule) -> RouteRule:
    if isinstance(rule, RouteRule):
        prefix, origin, change_origin = (
            rule.path_prefix,
            rule.target_origin,
            rule.change_origin,
        )
    else:
        try:
            prefix, origin, *rest = rule
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Malformed route rule {rule!r}") from e
        if len(rest) > 1:
            raise ConfigError(f"Malformed route rule {rule!r}")
        change_origin = rest[0] if rest else True

    if not isinstance(prefix, str) or not prefix:
        raise ConfigError(f"Path prefix must be a non-empty string, got {prefix!r}")
    if not prefix.startswith("/"):
        raise ConfigError(f"Path prefix {prefix!r} must start with '/'")
    if not isinstance(change_origin, bool):
        raise ConfigError(f"change_origin for {prefix!r} must be a boolean")

    return RouteRule(prefix, _validate_origin(origin), change_origin)


def _origin_headers(rule: RouteRule) -> Mapping[str, str]:
    if not rule.change_origin:
        return MappingProxyType({})
    return MappingProxyType(
        {"host": urlsplit(rule.target_origin).netloc, "origin": rule.target_origin}
    )


class RouterHandle:
    """Immutable, ordered routing table produced by :func:`configure`."""

    __slots__ = ("_rules", "_decisions")

    def __init__(self, rules: Tuple[RouteRule, ...]):
        self._rules = rules
        self._decisions = tuple(
            Forward(rule.target_origin, _origin_headers(rule), rule) for rule in rules
        )

    @property
    def rules(self) -> Tuple[RouteRule, ...]:
        return self._rules

    def route(self, path: str) -> Decision:
        for rule, decision in zip(self._rules, self._decisions):
            if path.startswith(rule.path_prefix):
                return decision
        return LOCAL

    def describe(self) -> list:
        return [
            {
                "path_prefix": rule.path_prefix,
                "target_origin": rule.target_origin,
                "change_origin": rule.change_origin,
            }
            for rule in self._rules
        ]

    def __repr__(self) -> str:
        return f"RouterHandle({list(self._rules)!r})"


def configure(
    rules: Iterable[Union[RouteRule, Tuple]],
) -> RouterHandle:
    """
    Validate ``rules`` and build the routing table.

    Each rule is a :class:`RouteRule` or a ``(prefix, origin[, change_origin])``
    tuple. Raises :class:`ConfigError` on the first malformed rule.
    """
    validated = []
    for raw in rules:
        rule = _validate_rule(raw)
        for earlier in validated:
            if rule.path_prefix.startswith(earlier.path_prefix):
                logger.warning(
                    f"[Router] Rule {rule.path_prefix} is shadowed by earlier rule "
                    f"{earlier.path_prefix} and will never match"
                )
                break
        validated.append(rule)
    return RouterHandle(tuple(validated))


def default_rules(
    origin: Optional[str] = None,
    prefixes: Optional[Iterable[str]] = None,
    change_origin: Optional[bool] = None,
) -> list:
    """Rules for the configured backend: every prefix goes to one origin."""
    origin = settings.DEV_BACKEND_ORIGIN if origin is None else origin
    prefixes = settings.PROXY_PREFIXES if prefixes is None else prefixes
    if change_origin is None:
        change_origin = settings.PROXY_CHANGE_ORIGIN
    return [RouteRule(prefix, origin, change_origin) for prefix in prefixes]
