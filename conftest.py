# Ensure tests import the package from this checkout first, also when it is
# not installed.
import os
import sys

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

BACKEND_ORIGIN = "http://localhost:8787"


class RecordingBackend:
    """Fake backend behind an httpx.MockTransport that records what it received."""

    def __init__(self):
        self.requests = []
        self.handler = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is not None:
            return self.handler(request)
        return httpx.Response(
            200,
            headers={"content-type": "application/json"},
            stream=httpx.ByteStream(b'{"ok": true}'),
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def backend():
    return RecordingBackend()


@pytest.fixture
def backend_client(backend):
    return httpx.AsyncClient(transport=httpx.MockTransport(backend))


@pytest.fixture
def site_dirs(tmp_path):
    """A pages root and public directory laid out like the front-end sources."""
    pages = tmp_path / "src" / "Pages"
    public = tmp_path / "public"
    (pages / "assets").mkdir(parents=True)
    public.mkdir()
    (pages / "index.html").write_text("<html><body>pages index</body></html>")
    (pages / "assets" / "app.js").write_text("console.log('app');")
    (public / "logo.png").write_bytes(b"\x89PNG fake")
    (public / "robots.txt").write_text("User-agent: *")
    return pages, public
