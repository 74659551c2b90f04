"""Errors raised while configuring the router or forwarding a request."""


class ConfigError(ValueError):
    """A route rule is malformed. The dev server must not start."""


class UpstreamUnavailable(Exception):
    """The backend could not be reached for a forwarded request."""

    status_code = 502
    summary = "Bad gateway - cannot reach"

    def __init__(self, target_url: str, reason: str):
        super().__init__(f"{self.summary} {target_url}: {reason}")
        self.target_url = target_url
        self.reason = reason


class UpstreamTimeout(UpstreamUnavailable):
    status_code = 504
    summary = "Gateway timeout waiting for"


class ClientDisconnected(Exception):
    """The caller went away before the forward completed."""
