import re
from collections.abc import Iterable
from urllib.parse import urlparse, urlunparse

MAX_CLIENT_URL_LENGTH = 2048
DEFAULT_PORTS = {"http": "80", "https": "443"}


class InvalidClientURLError(ValueError):
    """Raised when a claimed client URL cannot identify a remote node."""


def normalize_client_url(raw_url: str | None, *, deny_list: Iterable[str] = ()) -> str:
    """Validate a claimed client URL and reduce it to the form used as entry identity."""
    if not isinstance(raw_url, str) or not raw_url.strip():
        raise InvalidClientURLError("clientUrl is required")

    candidate = raw_url.strip()
    if len(candidate) > MAX_CLIENT_URL_LENGTH:
        raise InvalidClientURLError(f"clientUrl must be at most {MAX_CLIENT_URL_LENGTH} characters")
    if any(char.isspace() for char in candidate):
        raise InvalidClientURLError("clientUrl must not contain whitespace")

    parsed = urlparse(candidate)
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise InvalidClientURLError(f"clientUrl must be an absolute http(s) URL: {candidate}")

    try:
        host = parsed.hostname
        port = parsed.port
    except ValueError as exc:
        raise InvalidClientURLError(f"clientUrl has an invalid port: {candidate}") from exc
    if not host:
        raise InvalidClientURLError(f"clientUrl has no host: {candidate}")
    if parsed.username or parsed.password:
        raise InvalidClientURLError("clientUrl must not carry credentials")

    netloc = f"[{host}]" if ":" in host else host
    if port is not None and str(port) != DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    path = parsed.path
    if path.endswith("/"):
        path = path.rstrip("/")

    normalized = urlunparse((scheme, netloc, path, "", parsed.query, ""))

    for pattern in deny_list:
        if re.match(pattern, normalized):
            raise InvalidClientURLError(f"clientUrl is not allowed by the deny list: {normalized}")

    return normalized


def identity_candidates(client_url: str) -> list[str]:
    """Spellings under which a node may describe itself in its own metadata."""
    stripped = client_url.rstrip("/")
    return list(dict.fromkeys([client_url, stripped, f"{stripped}/"]))
