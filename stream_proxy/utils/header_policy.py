import logging
from typing import Iterable, Mapping, Optional
from urllib.parse import urlsplit

from stream_proxy.configs import settings
from stream_proxy.const import BASE_REQUEST_HEADERS, FORWARDED_REQUEST_HEADERS, SENSITIVE_REQUEST_HEADERS
from stream_proxy.schemas import HostHeaderPolicy, ProxyRequest
from stream_proxy.utils.content_utils import ContentKind

logger = logging.getLogger(__name__)

ORIGIN_PLACEHOLDER = "{origin}"

# Checked in order, first match wins. Entries from settings.header_policies are checked before these.
DEFAULT_HEADER_POLICIES = [
    HostHeaderPolicy(
        host_pattern="hotstar.com",
        headers={
            "origin": "https://www.hotstar.com",
            "referer": "https://www.hotstar.com/",
            "x-country-code": "in",
            "x-platform-code": "PCTV",
            "x-client-code": "LR",
        },
        timeout=60,
    ),
    HostHeaderPolicy(
        host_pattern="akamaized.net",
        headers={"origin": ORIGIN_PLACEHOLDER, "referer": ORIGIN_PLACEHOLDER},
    ),
]


def get_origin(url: str) -> str:
    """Return scheme://host[:port] of a URL, without credentials."""
    parts = urlsplit(url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parts.port:
        host = f"{host}:{parts.port}"
    return f"{parts.scheme}://{host}"


def get_header_policies() -> list[HostHeaderPolicy]:
    return [*settings.header_policies, *DEFAULT_HEADER_POLICIES]


def match_header_policy(url: str, policies: Optional[Iterable[HostHeaderPolicy]] = None) -> Optional[HostHeaderPolicy]:
    """
    Find the first host policy that applies to a URL.

    Args:
        url (str): The upstream URL.
        policies (Iterable[HostHeaderPolicy], optional): Policies to check. Defaults to the configured table.

    Returns:
        Optional[HostHeaderPolicy]: The matching policy, or None.
    """
    hostname = urlsplit(url).hostname or ""
    for policy in get_header_policies() if policies is None else policies:
        if policy.matches(hostname):
            return policy
    return None


def build_upstream_headers(
    proxy_request: ProxyRequest,
    content_kind: ContentKind,
    policies: Optional[Iterable[HostHeaderPolicy]] = None,
    request_headers: Optional[Mapping[str, str]] = None,
) -> dict:
    """
    Build the header set sent to the upstream CDN.

    Args:
        proxy_request (ProxyRequest): The sanitized request.
        content_kind (ContentKind): The classified kind of the target.
        policies (Iterable[HostHeaderPolicy], optional): Policies to use instead of the configured table.
        request_headers (Mapping[str, str], optional): Inbound client headers; ``Range`` and ``If-Range`` are
            relayed for non-manifest content.

    Returns:
        dict: Lower-cased header names mapped to values.
    """
    target_url = proxy_request.target_url
    origin = get_origin(target_url)

    headers = dict(BASE_REQUEST_HEADERS)
    headers["user-agent"] = settings.user_agent

    policy = match_header_policy(target_url, policies)
    if policy:
        logger.debug(f"Applying header policy '{policy.host_pattern}' for {target_url}")
        headers.update({k.lower(): v.replace(ORIGIN_PLACEHOLDER, origin) for k, v in policy.headers.items()})
    elif not content_kind.is_manifest:
        # CDNs check that segments are requested from the manifest's origin
        headers["referer"] = origin

    if request_headers and not content_kind.is_manifest:
        headers.update({name: request_headers[name] for name in FORWARDED_REQUEST_HEADERS if name in request_headers})

    if proxy_request.user_agent_override:
        headers["user-agent"] = proxy_request.user_agent_override
    if proxy_request.embedded_cookie:
        headers["cookie"] = proxy_request.embedded_cookie

    return headers


def get_fetch_timeout(url: str, policies: Optional[Iterable[HostHeaderPolicy]] = None) -> float:
    policy = match_header_policy(url, policies)
    if policy and policy.timeout:
        return policy.timeout
    return settings.transport_config.timeout


def redact_headers(headers: dict) -> dict:
    """Return a copy of ``headers`` that is safe to log."""
    return {k: "<redacted>" if k.lower() in SENSITIVE_REQUEST_HEADERS else v for k, v in headers.items()}
