STREAM_PROXY_PATH = "/stream-proxy"

SUPPORTED_RESPONSE_HEADERS = [
    "accept-ranges",
    "content-range",
    "last-modified",
    "etag",
    "cache-control",
    "expires",
]

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, OPTIONS",
    "access-control-allow-headers": "*",
    "access-control-expose-headers": "*",
}

BASE_REQUEST_HEADERS = {
    "accept": "*/*",
    "accept-encoding": "gzip, deflate, br",
    "connection": "keep-alive",
    "sec-fetch-dest": "empty",
    "sec-fetch-mode": "cors",
    "sec-fetch-site": "cross-site",
}

SENSITIVE_REQUEST_HEADERS = ["cookie", "authorization"]

# Client headers relayed upstream for segment and other non-manifest requests.
FORWARDED_REQUEST_HEADERS = ["range", "if-range"]
