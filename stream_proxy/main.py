import logging

from fastapi import FastAPI, Request

from stream_proxy.configs import settings
from stream_proxy.handlers import generate_proxy_urls
from stream_proxy.middleware import ProxyAwareCORSMiddleware
from stream_proxy.routes import proxy_router
from stream_proxy.schemas import GenerateUrlsRequest

logging.basicConfig(level=settings.log_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
app = FastAPI(title="Stream Proxy")
app.add_middleware(
    ProxyAwareCORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.post(
    "/generate_urls",
    description="Route the URLs of streaming sources through the stream proxy",
    response_description="Returns the streaming sources with proxied URLs",
    tags=["url"],
)
async def generate_urls(request: Request, payload: GenerateUrlsRequest):
    """Rewrite each streaming source URL into its stream proxy form."""
    return {"streamingSources": generate_proxy_urls(request, payload)}


app.include_router(proxy_router, prefix=settings.route_prefix, tags=["proxy"])


def run():
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8888, log_level="info")


if __name__ == "__main__":
    run()
