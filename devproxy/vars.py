import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "devproxy")

DEV_SERVER_HOST = os.getenv("DEV_SERVER_HOST", "localhost")
DEV_SERVER_PORT = int(os.getenv("DEV_SERVER_PORT", "5173"))

DEV_BACKEND_SCHEME = os.getenv("DEV_BACKEND_SCHEME", "http")
DEV_BACKEND_HOST = os.getenv("DEV_BACKEND_HOST", "localhost")
DEV_BACKEND_PORT = int(os.getenv("DEV_BACKEND_PORT", "8787"))
DEV_BACKEND_ORIGIN = os.getenv(
    "DEV_BACKEND_ORIGIN",
    f"{DEV_BACKEND_SCHEME}://{DEV_BACKEND_HOST}:{DEV_BACKEND_PORT}",
).rstrip("/")

# Order matters: the first matching prefix wins
PROXY_PREFIXES = [
    p.strip() for p in os.getenv("PROXY_PREFIXES", "/api,/webdav").split(",") if p.strip()
]
PROXY_CHANGE_ORIGIN = os.getenv("PROXY_CHANGE_ORIGIN", "true").lower() == "true"
PROXY_TIMEOUT = float(os.getenv("PROXY_TIMEOUT", "300"))
PROXY_CONNECT_TIMEOUT = float(os.getenv("PROXY_CONNECT_TIMEOUT", "5"))
PROXY_REWRITE_LOCATION = (
    os.getenv("PROXY_REWRITE_LOCATION", "true").lower() == "true"
)

PAGES_ROOT = os.getenv("PAGES_ROOT", "src/Pages")
PUBLIC_DIR = os.getenv("PUBLIC_DIR", "public")

METRICS_PATH = os.getenv("METRICS_PATH", "/__devproxy/metrics")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
