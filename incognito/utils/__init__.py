from urllib.parse import urlsplit, urlunsplit


def redact_url(url: str) -> str:
    """Strip credentials and query from a URL so it can be logged."""
    try:
        parts = urlsplit(url)
        netloc = parts.hostname or ""
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
    except ValueError:
        return "<malformed url>"
    query = "?..." if parts.query else ""
    return urlunsplit((parts.scheme, netloc, parts.path, "", "")) + query
