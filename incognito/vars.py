import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "incognito-proxy")
HOST = os.environ.get("HOSTNAME", "0.0.0.0")
PORT = os.environ.get("PORT", "8080")
LOG_LEVEL = os.getenv("LOG_LEVEL", "info").lower()

# Upstream response-header wait, milliseconds
REQUEST_TIMEOUT = os.getenv("REQUEST_TIMEOUT", "5000")
# Comma-separated target prefixes, empty allows everything
WHITELIST = os.environ.get("WHITELIST", "")
CORS_ORIGIN = os.getenv("CORS_ORIGIN", "*")

# Key for the external service behind /api/contact. Unset downgrades it to 503.
CONTACT_SECRET_KEY = os.getenv("CONTACT_SECRET_KEY", "")

STATIC_DIR = os.getenv("STATIC_DIR", "static")

BARE_PREFIX = os.getenv("BARE_PREFIX", "/bare/")
TUNNEL_APP = os.getenv("TUNNEL_APP", "")

PATH_PREFIX = os.getenv("PATH_PREFIX", "/p/")
QUERY_PARAM = os.getenv("QUERY_PARAM", "link")
REWRITE_PREFIX = os.getenv("REWRITE_PREFIX", "/proxy/")
BODY_PATH = os.getenv("BODY_PATH", "/proxy")
# Largest JSON body accepted by the body form, bytes
JSON_BODY_LIMIT = os.getenv("JSON_BODY_LIMIT", str(2 * 1024 * 1024))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
