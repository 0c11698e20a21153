import logging
from typing import Optional
from urllib.parse import parse_qs, parse_qsl, unquote, unquote_plus, urlsplit, urlunsplit

from stream_proxy.const import STREAM_PROXY_PATH
from stream_proxy.schemas import ProxyRequest

logger = logging.getLogger(__name__)

CREDENTIAL_SEPARATOR = "|"
COOKIE_PARAM = "cookie"
USER_AGENT_PARAM = "user-agent"


class InvalidRequest(Exception):
    def __init__(self, message: str, url: Optional[str] = None):
        self.message = message
        self.url = url
        super().__init__(message)


def is_stream_proxy_url(url: str) -> bool:
    """Check whether a URL points at a stream proxy route (this one or another instance)."""
    return urlsplit(url).path.rstrip("/").endswith(STREAM_PROXY_PATH)


def extract_nested_proxy_url(url: str) -> Optional[str]:
    """
    Return the inner target of a URL that points back at the stream proxy route.

    Args:
        url (str): The candidate target URL.

    Returns:
        Optional[str]: The decoded inner ``url`` parameter, or None if the URL is not a proxy URL.

    Raises:
        InvalidRequest: If the URL is a proxy URL without an inner target.
    """
    if not is_stream_proxy_url(url):
        return None
    inner = parse_qs(urlsplit(url).query).get("url", [""])[0].strip()
    if not inner:
        raise InvalidRequest("Self-referential proxy URL without a target", url)
    return inner


def split_embedded_credentials(url: str) -> tuple[str, dict]:
    """
    Split the ``|Cookie=...&User-Agent=...`` suffix some platforms append to media URLs.

    Args:
        url (str): The URL, possibly carrying a pipe suffix.

    Returns:
        tuple: The URL without the suffix and a dict of lower-cased credential names to decoded values.
    """
    url, _, suffix = url.partition(CREDENTIAL_SEPARATOR)
    credentials = {}
    for key, value in parse_qsl(suffix):
        key = key.strip().lower()
        if key in (COOKIE_PARAM, USER_AGENT_PARAM):
            credentials[key] = value
        else:
            logger.debug(f"Ignoring unsupported embedded parameter: {key}")
    return url, credentials


def strip_credential_params(url: str) -> tuple[str, dict]:
    """
    Remove ``Cookie`` and ``User-Agent`` query parameters from a URL.

    The remaining query string is kept byte for byte so that signed CDN URLs stay valid.

    Args:
        url (str): The URL to clean.

    Returns:
        tuple: The cleaned URL and a dict of the removed credential values.
    """
    parts = urlsplit(url)
    if not parts.query:
        return url, {}

    credentials = {}
    kept = []
    for pair in parts.query.split("&"):
        key, _, value = pair.partition("=")
        name = unquote_plus(key).strip().lower()
        if name in (COOKIE_PARAM, USER_AGENT_PARAM):
            credentials[name] = unquote_plus(value)
        else:
            kept.append(pair)

    if not credentials:
        return url, {}
    return urlunsplit(parts._replace(query="&".join(kept))), credentials


def repair_encoded_url(url: str) -> str:
    """Decode a target that arrived percent-encoded one level too many times."""
    if url.lower().startswith(("http%3a", "https%3a")):
        decoded = unquote(url)
        logger.info(f"URL decoded: '{strip_embedded_credentials(decoded)}'")
        return decoded
    return url


def strip_embedded_credentials(url: str) -> str:
    """Return ``url`` without its pipe credential suffix, for logs and error bodies."""
    return url.partition(CREDENTIAL_SEPARATOR)[0]


def validate_absolute_url(url: str) -> str:
    try:
        parts = urlsplit(url)
        # Reading the port rejects non-numeric and out-of-range values.
        parts.port
    except ValueError as e:
        raise InvalidRequest(f"Invalid URL: {e}", url)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise InvalidRequest("URL must be an absolute http(s) URL", url)
    return url


def sanitize_request(raw_url: Optional[str]) -> ProxyRequest:
    """
    Turn the inbound ``url`` query parameter into a validated proxy request.

    Args:
        raw_url (Optional[str]): The decoded value of the ``url`` query parameter.

    Returns:
        ProxyRequest: The target URL and any credentials embedded in it.

    Raises:
        InvalidRequest: If the parameter is missing, malformed, or loops back to the proxy.
    """
    if raw_url is None or not raw_url.strip():
        raise InvalidRequest("URL parameter is required")

    url = repair_encoded_url(raw_url.strip())
    try:
        return _parse_request(url)
    except ValueError as e:
        raise InvalidRequest(f"Invalid URL: {e}", strip_embedded_credentials(url))


def _parse_request(url: str) -> ProxyRequest:
    head, separator, suffix = url.partition(CREDENTIAL_SEPARATOR)
    inner = extract_nested_proxy_url(head)
    if inner is not None:
        url = repair_encoded_url(inner) + separator + suffix
        logger.warning(f"Unwrapped nested proxy URL: '{head}' -> '{strip_embedded_credentials(url)}'")
        if is_stream_proxy_url(strip_embedded_credentials(url)):
            raise InvalidRequest("Recursive proxy URL", head)

    url, pipe_credentials = split_embedded_credentials(url)
    url, query_credentials = strip_credential_params(url.strip())
    validate_absolute_url(url)

    credentials = {**query_credentials, **pipe_credentials}
    return ProxyRequest(
        target_url=url,
        embedded_cookie=credentials.get(COOKIE_PARAM) or None,
        user_agent_override=credentials.get(USER_AGENT_PARAM) or None,
    )
