from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send

from stream_proxy.const import STREAM_PROXY_PATH


class ProxyAwareCORSMiddleware(CORSMiddleware):
    """
    CORS middleware for the auxiliary endpoints.

    Requests to the stream proxy route skip it: that route answers its own preflights and sets the CORS
    headers on every relayed response.
    """

    def __init__(self, app: ASGIApp, excluded_path: str = STREAM_PROXY_PATH, **kwargs) -> None:
        super().__init__(app, **kwargs)
        self.excluded_path = excluded_path

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["path"].rstrip("/").endswith(self.excluded_path):
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)
