from fastapi import APIRouter, Query, Request
from fastapi.responses import Response

from stream_proxy.const import CORS_HEADERS, STREAM_PROXY_PATH
from stream_proxy.handlers import handle_stream_proxy

proxy_router = APIRouter()


@proxy_router.options(STREAM_PROXY_PATH, name="stream_proxy_preflight")
async def stream_proxy_preflight():
    """Answer CORS preflight requests without contacting the upstream."""
    return Response(status_code=200, headers=CORS_HEADERS)


@proxy_router.get(STREAM_PROXY_PATH, name="stream_proxy")
async def stream_proxy(
    request: Request,
    url: str | None = Query(None, description="The percent-encoded upstream manifest or segment URL."),
):
    """
    Fetch a manifest or segment from its CDN and relay it with CORS headers.

    Args:
        request (Request): The incoming HTTP request.
        url (str): The upstream URL, optionally followed by a ``|Cookie=...&User-Agent=...`` suffix.

    Returns:
        Response: The rewritten manifest, the streamed segment, or a JSON error.
    """
    return await handle_stream_proxy(request, url)


@proxy_router.get("/ping")
async def ping():
    return {"message": "Server is alive"}
