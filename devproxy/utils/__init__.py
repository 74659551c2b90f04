from urllib.parse import urlsplit


def origin_of(url: str) -> str:
    """Return ``scheme://netloc`` for ``url``."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"
