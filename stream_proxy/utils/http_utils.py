import logging
import typing
from dataclasses import dataclass
from functools import partial
from urllib.parse import quote

import anyio
import h11
import httpx
from fastapi import Response
from starlette.background import BackgroundTask
from starlette.concurrency import iterate_in_threadpool
from starlette.requests import Request
from starlette.types import Receive, Send, Scope
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_incrementing
from tqdm.asyncio import tqdm as tqdm_asyncio

from stream_proxy.configs import settings
from stream_proxy.const import STREAM_PROXY_PATH
from stream_proxy.utils.content_utils import ContentKind

logger = logging.getLogger(__name__)

MAX_ERROR_BODY_SIZE = 2048

# Network-level failures worth another attempt. HTTP status errors are never retried.
RETRYABLE_EXCEPTIONS = (httpx.TransportError, TimeoutError)


class UpstreamError(Exception):
    def __init__(self, status_code: int, message: str, url: str | None = None, details: typing.Any = None):
        self.status_code = status_code
        self.message = message
        self.url = url
        self.details = details
        super().__init__(message)


@dataclass
class UpstreamResponse:
    url: str
    status_code: int
    headers: httpx.Headers
    content_kind: ContentKind
    content: bytes | None = None  # Buffered body, set for manifests only.


def create_httpx_client(follow_redirects: bool = True, **kwargs) -> httpx.AsyncClient:
    """
    Create an HTTPX AsyncClient configured from the transport settings.

    Args:
        follow_redirects (bool): Whether to follow 3xx redirects automatically.
        **kwargs: Additional AsyncClient keyword arguments.

    Returns:
        httpx.AsyncClient: The configured client.
    """
    transport_config = settings.transport_config
    kwargs.setdefault("timeout", transport_config.timeout)
    if "transport" not in kwargs:
        kwargs.setdefault("mounts", transport_config.get_mounts())
    return httpx.AsyncClient(follow_redirects=follow_redirects, **kwargs)


def fetch_retrying() -> AsyncRetrying:
    """Retry controller: linear backoff of ``attempt * retry_backoff`` seconds between attempts."""
    transport_config = settings.transport_config
    return AsyncRetrying(
        stop=stop_after_attempt(transport_config.retry_attempts),
        wait=wait_incrementing(start=transport_config.retry_backoff, increment=transport_config.retry_backoff),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def parse_error_payload(response: httpx.Response) -> typing.Any:
    """Best-effort decode of an upstream error body for diagnostics."""
    try:
        return response.json()
    except ValueError:
        text = response.text[:MAX_ERROR_BODY_SIZE]
        return text or None


class Streamer:
    def __init__(self, client: httpx.AsyncClient):
        """
        Initialize a Streamer with a configured HTTP client.

        Args:
            client (httpx.AsyncClient): The HTTP client to use for fetching.
        """
        self.client = client
        self.response: httpx.Response | None = None
        self.progress_bar = None
        self.bytes_transferred = 0
        self.total_size = 0
        self.attempts = 0

    async def fetch(
        self, url: str, headers: dict, content_kind: ContentKind, timeout: float | None = None
    ) -> UpstreamResponse:
        """
        Fetch an upstream resource, buffering manifests and opening a stream for everything else.

        Args:
            url (str): The upstream URL.
            headers (dict): Request headers.
            content_kind (ContentKind): The classified kind of the target.
            timeout (float, optional): Deadline in seconds. Defaults to the transport timeout.

        Returns:
            UpstreamResponse: The successful upstream response.

        Raises:
            UpstreamError: On a non-2xx status, or when every attempt failed at the network level.
        """
        timeout = timeout or settings.transport_config.timeout
        try:
            async for attempt in fetch_retrying():
                with attempt:
                    self.attempts += 1
                    with anyio.fail_after(timeout):
                        # Manifests are read in full inside the deadline, segments only up to the headers.
                        self.response = await self._send(
                            url, headers, timeout, stream=not content_kind.is_manifest
                        )
        except TimeoutError:
            logger.warning(f"Timeout while fetching {url}")
            raise UpstreamError(500, f"Timeout while fetching {url}", url)
        except httpx.TooManyRedirects:
            logger.error(f"Too many redirects while fetching {url}")
            raise UpstreamError(500, f"Too many redirects while fetching {url}", url)
        except httpx.RequestError as e:
            logger.error(f"Error fetching {url} after {self.attempts} attempts: {e}")
            raise UpstreamError(500, f"Error fetching {url}: {e.__class__.__name__}", url)

        await self._raise_for_status(url)
        return UpstreamResponse(
            url=str(self.response.url),
            status_code=self.response.status_code,
            headers=self.response.headers,
            content_kind=content_kind,
            content=self.response.content if content_kind.is_manifest else None,
        )

    async def _send(self, url: str, headers: dict, timeout: float, stream: bool) -> httpx.Response:
        """
        Send a GET request, following redirects with the original headers on every hop.

        httpx drops the Cookie header when it follows redirects itself, which breaks CDNs that
        chain through token-issuing redirects.
        """
        max_redirects = settings.transport_config.max_redirects
        for _ in range(max_redirects + 1):
            request = self.client.build_request("GET", url, headers=headers, timeout=timeout)
            response = await self.client.send(request, stream=stream, follow_redirects=False)
            if not response.has_redirect_location:
                return response
            await response.aclose()
            url = str(response.url.join(response.headers["location"]))
            logger.debug(f"Following redirect to {url}")
        raise httpx.TooManyRedirects(f"Exceeded {max_redirects} redirects", request=request)

    async def _raise_for_status(self, url: str):
        if self.response.is_success:
            return
        status_code = self.response.status_code
        await self.response.aread()
        details = parse_error_payload(self.response)
        logger.error(f"HTTP error {status_code} while fetching {url}")
        raise UpstreamError(status_code, f"HTTP error {status_code} while fetching {url}", url, details)

    async def stream_content(self) -> typing.AsyncGenerator[bytes, None]:
        """
        Stream response content as an async byte generator.
        """
        if not self.response:
            raise RuntimeError("No response available for streaming")

        try:
            self.total_size = int(self.response.headers.get("content-length", 0) or 0)

            if settings.enable_streaming_progress:
                with tqdm_asyncio(
                    total=self.total_size,
                    unit="B",
                    unit_scale=True,
                    unit_divisor=1024,
                    desc="Streaming",
                    ncols=100,
                    mininterval=1,
                ) as self.progress_bar:
                    async for chunk in self.response.aiter_bytes():
                        yield chunk
                        self.bytes_transferred += len(chunk)
                        self.progress_bar.update(len(chunk))
            else:
                async for chunk in self.response.aiter_bytes():
                    yield chunk
                    self.bytes_transferred += len(chunk)

        except httpx.TimeoutException:
            logger.warning("Timeout while streaming")
            raise UpstreamError(500, "Timeout while streaming", str(self.response.url))
        except httpx.RemoteProtocolError as e:
            if self.bytes_transferred > 0:
                logger.warning(
                    f"Remote server closed connection after {self.bytes_transferred} bytes. Ending stream: {e}"
                )
                return
            logger.error(f"Protocol error while streaming: {e}")
            raise UpstreamError(500, "Upstream closed the connection", str(self.response.url))
        except GeneratorExit:
            logger.info("Streaming session stopped by the client")

    async def close(self):
        """
        Close HTTP response and client resources.
        """
        if self.response:
            await self.response.aclose()
        if self.progress_bar:
            self.progress_bar.close()
        await self.client.aclose()


def encode_stream_proxy_url(proxy_base_url: str, destination_url: str) -> str:
    """
    Build the proxy URL that routes ``destination_url`` back through this service.

    Args:
        proxy_base_url (str): Base URL of the proxy, without the route path.
        destination_url (str): Absolute upstream URL.

    Returns:
        str: ``{proxy_base_url}/stream-proxy?url={percent-encoded destination}``.
    """
    return f"{proxy_base_url.rstrip('/')}{STREAM_PROXY_PATH}?url={quote(destination_url, safe='')}"


def get_original_scheme(request: Request) -> str:
    """
    Determine the original scheme (http or https) of the incoming request.

    Args:
        request (Request): Incoming HTTP request.

    Returns:
        str: 'http' or 'https'
    """
    forwarded_proto = request.headers.get("X-Forwarded-Proto")
    if forwarded_proto:
        return forwarded_proto.split(",")[0].strip()

    if (
        request.url.scheme == "https"
        or request.headers.get("X-Forwarded-Ssl") == "on"
        or request.headers.get("X-Forwarded-Protocol") == "https"
        or request.headers.get("X-Url-Scheme") == "https"
    ):
        return "https"

    return "http"


def get_proxy_base_url(request: Request) -> str:
    """
    Return the externally visible base URL of the proxy (everything before ``/stream-proxy``).
    """
    if settings.public_base_url:
        return settings.public_base_url.rstrip("/")

    route_url = str(request.url_for("stream_proxy").replace(scheme=get_original_scheme(request)))
    if route_url.endswith(STREAM_PROXY_PATH):
        route_url = route_url[: -len(STREAM_PROXY_PATH)]
    return route_url.rstrip("/")


class EnhancedStreamingResponse(Response):
    body_iterator: typing.AsyncIterable[typing.Any]

    def __init__(
        self,
        content: typing.Union[typing.AsyncIterable[typing.Any], typing.Iterable[typing.Any]],
        status_code: int = 200,
        headers: typing.Optional[typing.Mapping[str, str]] = None,
        media_type: typing.Optional[str] = None,
        background: typing.Optional[BackgroundTask] = None,
    ) -> None:
        if isinstance(content, typing.AsyncIterable):
            self.body_iterator = content
        else:
            self.body_iterator = iterate_in_threadpool(content)
        self.status_code = status_code
        self.media_type = self.media_type if media_type is None else media_type
        self.background = background
        self.init_headers(headers)
        self.actual_content_length = 0

    @staticmethod
    async def listen_for_disconnect(receive: Receive) -> None:
        """
        Wait for the client to disconnect so the upstream read can be cancelled.
        """
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                logger.debug("Client disconnected")
                break

    async def stream_response(self, send: Send) -> None:
        """
        Relay the body chunk by chunk. Each send completes before the next upstream read.
        """
        # Upstream bodies are decoded on the fly, so any length header would be wrong.
        headers = [(name, value) for name, value in self.raw_headers if name.lower() != b"content-length"]
        await send({"type": "http.response.start", "status": self.status_code, "headers": headers})

        try:
            async for chunk in self.body_iterator:
                if not isinstance(chunk, (bytes, memoryview)):
                    chunk = chunk.encode(self.charset)
                try:
                    await send({"type": "http.response.body", "body": chunk, "more_body": True})
                except (ConnectionResetError, anyio.BrokenResourceError):
                    logger.info("Client disconnected during streaming")
                    return
                self.actual_content_length += len(chunk)
        except (httpx.RemoteProtocolError, h11.LocalProtocolError, UpstreamError) as e:
            logger.warning(f"Upstream error after {self.actual_content_length} bytes relayed: {e}")

        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI entrypoint: run streaming and disconnect listener concurrently.
        """
        async with anyio.create_task_group() as task_group:

            async def wrap(func: typing.Callable[[], typing.Awaitable[None]]) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, partial(self.stream_response, send))
            await wrap(partial(self.listen_for_disconnect, receive))

        if self.background is not None:
            await self.background()
