import logging
from typing import Any, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask

from .configs import settings
from .const import CORS_HEADERS, SUPPORTED_RESPONSE_HEADERS
from .schemas import ErrorResponse, GenerateUrlsRequest
from .utils.content_utils import ContentKind, classify, content_type_for
from .utils.header_policy import build_upstream_headers, get_fetch_timeout, redact_headers
from .utils.http_utils import (
    EnhancedStreamingResponse,
    Streamer,
    UpstreamError,
    UpstreamResponse,
    create_httpx_client,
    encode_stream_proxy_url,
    get_proxy_base_url,
)
from .utils.m3u8_processor import M3U8Processor, RewriteError
from .utils.url_utils import InvalidRequest, sanitize_request

logger = logging.getLogger(__name__)

PROXY_ERROR_MESSAGE = "Failed to proxy stream"


async def setup_client_and_streamer() -> tuple[httpx.AsyncClient, Streamer]:
    """
    Set up an HTTP client and a streamer.

    Returns:
        tuple: An httpx.AsyncClient instance and a Streamer instance.
    """
    client = create_httpx_client()
    return client, Streamer(client)


def error_response(status_code: int, message: str, error: Any, url: Optional[str], details: Any = None) -> Response:
    body = ErrorResponse(message=message, error=error, url=url, details=details)
    content = body.model_dump(exclude={"details"} if details is None else None)
    return JSONResponse(status_code=status_code, content=content, headers=CORS_HEADERS)


def handle_exceptions(exception: Exception, url: Optional[str] = None) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.
        url (str, optional): The target URL of the failed request.

    Returns:
        Response: A JSON error response carrying the CORS headers.
    """
    if isinstance(exception, InvalidRequest):
        logger.warning(f"Invalid proxy request for '{exception.url or url}': {exception.message}")
        return error_response(400, exception.message, "InvalidRequest", exception.url or url)
    elif isinstance(exception, UpstreamError):
        logger.error(f"Upstream error while proxying {exception.url or url}: {exception.message}")
        return error_response(
            exception.status_code or 500,
            PROXY_ERROR_MESSAGE,
            exception.details if exception.details is not None else exception.message,
            exception.url or url,
            exception.details,
        )
    else:
        logger.exception(f"Internal server error while proxying {url}: {exception}")
        return error_response(500, PROXY_ERROR_MESSAGE, "Internal proxy error", url)


def prepare_response_headers(upstream: UpstreamResponse) -> dict:
    """
    Prepare response headers for the relayed response.

    The classifier's Content-Type wins for known manifest and segment kinds; other content keeps
    the upstream Content-Type.

    Args:
        upstream (UpstreamResponse): The upstream response.

    Returns:
        dict: The headers for the proxy response.
    """
    if upstream.content_kind.is_manifest:
        # The body is rewritten, so range and validator headers no longer describe it.
        response_headers = {k: v for k, v in upstream.headers.multi_items() if k == "cache-control"}
    else:
        response_headers = {k: v for k, v in upstream.headers.multi_items() if k in SUPPORTED_RESPONSE_HEADERS}

    content_type = content_type_for(upstream.content_kind) or upstream.headers.get("content-type")
    if content_type:
        response_headers["content-type"] = content_type
    response_headers.update(CORS_HEADERS)
    return response_headers


def relay_manifest(request: Request, upstream: UpstreamResponse) -> Response:
    """
    Build the response for a buffered manifest, rewriting HLS playlists so every URI goes through the proxy.

    DASH manifests are relayed unmodified.
    """
    content: str | bytes = upstream.content or b""
    if upstream.content_kind == ContentKind.MANIFEST_HLS:
        processor = M3U8Processor(get_proxy_base_url(request), settings.rewrite_key_uris)
        try:
            content = processor.rewrite(upstream.content or b"", upstream.url)
        except RewriteError as e:
            logger.warning(f"Relaying playlist from {upstream.url} without rewriting: {e}")

    return Response(content=content, status_code=upstream.status_code, headers=prepare_response_headers(upstream))


async def handle_stream_proxy(request: Request, raw_url: Optional[str]) -> Response:
    """
    Handle a stream proxy request.

    Sanitizes the target, builds the upstream headers, fetches the target and relays it: manifests
    are buffered and rewritten, everything else is streamed through as it arrives.

    Args:
        request (Request): The incoming FastAPI request object.
        raw_url (str, optional): The decoded ``url`` query parameter.

    Returns:
        Response: The relayed content or a JSON error response.
    """
    try:
        proxy_request = sanitize_request(raw_url)
    except InvalidRequest as e:
        return handle_exceptions(e, raw_url)

    target_url = proxy_request.target_url
    _, streamer = await setup_client_and_streamer()
    try:
        content_kind = classify(target_url)
        upstream_headers = build_upstream_headers(proxy_request, content_kind, request_headers=request.headers)
        logger.info(f"Proxying {content_kind.value} request to: {target_url}")
        logger.debug(f"Upstream request headers: {redact_headers(upstream_headers)}")

        upstream = await streamer.fetch(
            target_url, upstream_headers, content_kind, timeout=get_fetch_timeout(target_url)
        )

        if content_kind.is_manifest:
            response = relay_manifest(request, upstream)
            await streamer.close()
            return response

        return EnhancedStreamingResponse(
            streamer.stream_content(),
            status_code=upstream.status_code,
            headers=prepare_response_headers(upstream),
            background=BackgroundTask(streamer.close),
        )
    except Exception as e:
        await streamer.close()
        return handle_exceptions(e, target_url)


def generate_proxy_urls(request: Request, payload: GenerateUrlsRequest) -> list[dict]:
    """
    Route the URLs of a list of streaming sources through the proxy.

    Args:
        request (Request): The incoming request, used to derive the proxy base URL.
        payload (GenerateUrlsRequest): The streaming sources and optional base URL.

    Returns:
        list[dict]: The sources with their ``url`` replaced by the proxied form.
    """
    proxy_base_url = payload.proxy_base_url or get_proxy_base_url(request)
    return [
        {**source.model_dump(), "url": encode_stream_proxy_url(proxy_base_url, source.url)}
        for source in payload.streaming_sources
    ]
