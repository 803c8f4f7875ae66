"""
Service URL parsing.

Service URLs look like scheme://[user[:pass]@]host[:port][/path][?query].
urllib lowercases schemes and hostnames, but credentials and tokens often
sit in those positions, so the pieces are split by hand and keep their case.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import unquote

from herald.utils.errors import InvalidEndpointURL

SCHEME_SEPARATOR = "://"


def extract_scheme(url: str) -> str:
    """Return the (case-sensitive) scheme of a service URL, or ''."""
    if not isinstance(url, str):
        return ""
    idx = url.find(SCHEME_SEPARATOR)
    return url[:idx] if idx > 0 else ""


@dataclass(frozen=True)
class ServiceURL:
    """Structured view of a service URL."""
    raw: str
    scheme: str
    host: str = ""
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    path: List[str] = field(default_factory=list)
    query: Dict[str, str] = field(default_factory=dict)

    @property
    def headers(self) -> Dict[str, str]:
        """Query keys prefixed with '+' are extra HTTP headers."""
        return {k[1:]: v for k, v in self.query.items() if k.startswith("+") and len(k) > 1}

    @property
    def options(self) -> Dict[str, str]:
        """Query keys that are plain endpoint options (lowercased)."""
        return {k.lower(): v for k, v in self.query.items() if not k.startswith("+")}


def parse_query(query_string: str) -> Dict[str, str]:
    """
    Decode a query string into a dict, later keys winning.

    Plain percent-decoding only: a literal '+' is kept because it marks
    header options (+X-Api-Key=abc). Spaces must be sent as %20.
    """
    query: Dict[str, str] = {}
    for pair in query_string.split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        key = unquote(key)
        if key:
            query[key] = unquote(value)
    return query


def parse_service_url(url: str) -> ServiceURL:
    """
    Split a service URL into its parts.

    Raises:
        InvalidEndpointURL: missing scheme separator or a bad port
    """
    scheme = extract_scheme(url)
    if not scheme:
        raise InvalidEndpointURL(f"Invalid service URL (missing scheme): {url!r}")

    rest = url[len(scheme) + len(SCHEME_SEPARATOR):]
    rest, _, _fragment = rest.partition("#")
    rest, _, query_string = rest.partition("?")
    netloc, _, path = rest.partition("/")

    user = password = None
    if "@" in netloc:
        userinfo, netloc = netloc.rsplit("@", 1)
        user, sep, pw = userinfo.partition(":")
        user = unquote(user) or None
        password = unquote(pw) if sep else None

    host, port = netloc, None
    if ":" in netloc:
        candidate_host, candidate_port = netloc.rsplit(":", 1)
        if candidate_port.isdigit():
            host, port = candidate_host, int(candidate_port)
            if not 0 < port < 65536:
                raise InvalidEndpointURL(f"Invalid port {port} in service URL")
        elif candidate_port == "":
            host = candidate_host

    segments = [unquote(segment) for segment in path.split("/") if segment]
    query = parse_query(query_string)

    return ServiceURL(
        raw=url,
        scheme=scheme,
        host=unquote(host),
        port=port,
        user=user,
        password=password,
        path=segments,
        query=query,
    )


def redact_service_url(url: str) -> str:
    """Service URL with the password replaced, for logs and metrics samples."""
    scheme = extract_scheme(url)
    if not scheme:
        return url
    rest = url[len(scheme) + len(SCHEME_SEPARATOR):]
    netloc, sep, tail = rest.partition("/")
    if "@" in netloc:
        userinfo, host = netloc.rsplit("@", 1)
        user, has_password, _ = userinfo.partition(":")
        if has_password:
            netloc = f"{user}:****@{host}"
    return f"{scheme}{SCHEME_SEPARATOR}{netloc}{sep}{tail}"
