import httpx
import pytest

from stream_proxy.configs import settings
from stream_proxy.utils.http_utils import encode_stream_proxy_url

MANIFEST = "#EXTM3U\n#EXT-X-TARGETDURATION:10\n#EXTINF:10.0,\nsegment1.ts\n#EXTINF:10.0,\nhttps://cdn.example/seg2.ts\n"


def _assert_cors(response):
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["access-control-allow-methods"] == "GET, OPTIONS"
    assert response.headers["access-control-allow-headers"] == "*"
    assert response.headers["access-control-expose-headers"] == "*"


def test_missing_url_is_a_400_without_upstream_call(client, upstream):
    calls = upstream(lambda request: httpx.Response(200))

    response = client.get("/stream-proxy")

    assert response.status_code == 400
    assert response.json()["message"] == "URL parameter is required"
    assert response.json()["error"] == "InvalidRequest"
    assert calls == []
    _assert_cors(response)


def test_relative_url_is_a_400(client, upstream):
    calls = upstream(lambda request: httpx.Response(200))

    response = client.get("/stream-proxy", params={"url": "segment1.ts"})

    assert response.status_code == 400
    assert response.json()["url"] == "segment1.ts"
    assert calls == []


def test_options_never_reaches_upstream(client, upstream):
    calls = upstream(lambda request: httpx.Response(200))

    response = client.options("/stream-proxy", params={"url": "https://cdn.example/index.m3u8"})

    assert response.status_code == 200
    assert response.content == b""
    assert calls == []
    _assert_cors(response)


def test_browser_preflight_is_answered(client, upstream):
    calls = upstream(lambda request: httpx.Response(200))

    response = client.options(
        "/stream-proxy",
        headers={"origin": "https://player.example", "access-control-request-method": "GET"},
    )

    assert response.status_code == 200
    assert response.content == b""
    _assert_cors(response)
    assert calls == []


def test_generate_urls_preflight_uses_cors_middleware(client):
    response = client.options(
        "/generate_urls",
        headers={"origin": "https://player.example", "access-control-request-method": "POST"},
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert "POST" in response.headers["access-control-allow-methods"]


@pytest.mark.parametrize(
    "bad_url",
    ["http://[::1", "http://cdn.example:abc/seg.ts", "http://cdn.example:99999/seg.ts"],
)
def test_malformed_url_is_a_json_400(client, upstream, bad_url):
    calls = upstream(lambda request: httpx.Response(200))

    response = client.get("/stream-proxy", params={"url": bad_url})

    assert response.status_code == 400
    assert response.headers["content-type"] == "application/json"
    assert response.json()["error"] == "InvalidRequest"
    assert calls == []
    _assert_cors(response)


def test_hls_manifest_is_rewritten(client, upstream):
    calls = upstream(
        lambda request: httpx.Response(200, text=MANIFEST, headers={"content-type": "text/plain", "etag": "abc"})
    )

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/path/index.m3u8"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/vnd.apple.mpegurl"
    assert "etag" not in response.headers
    _assert_cors(response)
    lines = response.text.splitlines()
    assert len(lines) == len(MANIFEST.splitlines())
    assert lines[0] == "#EXTM3U"
    assert lines[2] == "#EXTINF:10.0,"
    assert lines[3] == "http://testserver/stream-proxy?url=https%3A%2F%2Fcdn.example%2Fpath%2Fsegment1.ts"
    assert lines[5] == "http://testserver/stream-proxy?url=https%3A%2F%2Fcdn.example%2Fseg2.ts"
    assert len(calls) == 1
    assert "referer" not in calls[0].headers


def test_rewritten_urls_follow_public_base_url_and_forwarded_proto(client, upstream, monkeypatch):
    upstream(lambda request: httpx.Response(200, text=MANIFEST))

    forwarded = client.get(
        "/stream-proxy",
        params={"url": "https://cdn.example/path/index.m3u8"},
        headers={"x-forwarded-proto": "https"},
    )
    monkeypatch.setattr(settings, "public_base_url", "https://proxy.local/")
    configured = client.get("/stream-proxy", params={"url": "https://cdn.example/path/index.m3u8"})

    assert forwarded.text.splitlines()[3].startswith("https://testserver/stream-proxy?url=")
    assert configured.text.splitlines()[3] == encode_stream_proxy_url(
        "https://proxy.local", "https://cdn.example/path/segment1.ts"
    )


def test_playlist_is_resolved_against_redirected_location(client, upstream):
    def handler(request):
        if request.url.host == "entry.example":
            return httpx.Response(302, headers={"location": "https://edge.example/live/v1/index.m3u8"})
        return httpx.Response(200, text="#EXTM3U\nchunk-1.ts\n")

    upstream(handler)

    response = client.get("/stream-proxy", params={"url": "https://entry.example/channel/index.m3u8"})

    assert response.text.splitlines()[1] == encode_stream_proxy_url(
        "http://testserver", "https://edge.example/live/v1/chunk-1.ts"
    )


def test_mislabeled_binary_manifest_is_relayed_raw(client, upstream):
    body = b"\x47\x40\x11\x10\x00\x42\xf0\x25\xff"
    upstream(lambda request: httpx.Response(200, content=body))

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/broken/index.m3u8"})

    assert response.status_code == 200
    assert response.content == body
    assert response.headers["content-type"] == "application/vnd.apple.mpegurl"


def test_dash_manifest_is_passed_through(client, upstream):
    mpd = '<?xml version="1.0"?><MPD><BaseURL>video/</BaseURL></MPD>'
    upstream(lambda request: httpx.Response(200, text=mpd, headers={"content-type": "application/xml"}))

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/vod/manifest.mpd"})

    assert response.status_code == 200
    assert response.text == mpd
    assert response.headers["content-type"] == "application/dash+xml"


def test_segment_is_streamed_with_status_and_headers(client, upstream):
    body = b"\x47" * 188 * 20
    calls = upstream(
        lambda request: httpx.Response(
            206,
            content=body,
            headers={
                "content-type": "application/octet-stream",
                "content-range": f"bytes 0-{len(body) - 1}/{len(body)}",
                "set-cookie": "edge=1",
            },
        )
    )

    response = client.get("/stream-proxy", params={"url": "http://edge.example:8080/live/seg-1.ts"})

    assert response.status_code == 206
    assert response.content == body
    assert response.headers["content-type"] == "video/MP2T"
    assert response.headers["content-range"] == f"bytes 0-{len(body) - 1}/{len(body)}"
    assert "set-cookie" not in response.headers
    _assert_cors(response)
    assert calls[0].headers["referer"] == "http://edge.example:8080"


def test_fmp4_segment_content_type(client, upstream):
    upstream(lambda request: httpx.Response(200, content=b"moof"))

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/v/chunk-1.m4s"})

    assert response.headers["content-type"] == "video/mp4"


def test_range_headers_are_forwarded_for_segments(client, upstream):
    calls = upstream(
        lambda request: httpx.Response(206, content=b"mo", headers={"content-range": "bytes 0-1/4096"})
    )

    response = client.get(
        "/stream-proxy",
        params={"url": "https://cdn.example/v/chunk-1.m4s"},
        headers={"range": "bytes=0-1", "if-range": '"etag-1"'},
    )

    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 0-1/4096"
    assert calls[0].headers["range"] == "bytes=0-1"
    assert calls[0].headers["if-range"] == '"etag-1"'


def test_range_header_is_not_forwarded_for_manifests(client, upstream):
    calls = upstream(lambda request: httpx.Response(200, text=MANIFEST))

    client.get("/stream-proxy", params={"url": "https://cdn.example/path/index.m3u8"}, headers={"range": "bytes=0-1"})

    assert "range" not in calls[0].headers


def test_unknown_content_keeps_upstream_content_type(client, upstream):
    upstream(lambda request: httpx.Response(200, content=b"0123456789abcdef", headers={"content-type": "binary/key"}))

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/keys/k1"})

    assert response.content == b"0123456789abcdef"
    assert response.headers["content-type"] == "binary/key"


def test_upstream_403_is_relayed_after_one_attempt(client, upstream):
    calls = upstream(lambda request: httpx.Response(403, json={"reason": "token expired"}))

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/live/index.m3u8|Cookie=secret%3D1"})

    assert response.status_code == 403
    assert len(calls) == 1
    body = response.json()
    assert body["message"] == "Failed to proxy stream"
    assert body["error"] == {"reason": "token expired"}
    assert body["details"] == {"reason": "token expired"}
    assert body["url"] == "https://cdn.example/live/index.m3u8"
    assert "secret" not in response.text
    _assert_cors(response)


def test_network_failures_are_retried_before_relay(client, upstream):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, content=b"segment")

    calls = upstream(handler)

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/live/seg-9.ts"})

    assert response.status_code == 200
    assert response.content == b"segment"
    assert len(calls) == 3


def test_exhausted_retries_are_a_500(client, upstream):
    def handler(request):
        raise httpx.ConnectError("dns failure", request=request)

    calls = upstream(handler)

    response = client.get("/stream-proxy", params={"url": "https://cdn.example/live/seg-9.ts"})

    assert response.status_code == 500
    assert len(calls) == 3
    assert response.json()["url"] == "https://cdn.example/live/seg-9.ts"
    _assert_cors(response)


def test_embedded_credentials_are_sent_upstream(client, upstream):
    calls = upstream(lambda request: httpx.Response(200, text="#EXTM3U\n"))

    client.get(
        "/stream-proxy",
        params={"url": "https://cdn.example/live/index.m3u8?sig=1&User-Agent=App%2F2|Cookie=hdntl%3Dexp%3D99"},
    )

    assert str(calls[0].url) == "https://cdn.example/live/index.m3u8?sig=1"
    assert calls[0].headers["cookie"] == "hdntl=exp=99"
    assert calls[0].headers["user-agent"] == "App/2"


def test_nested_proxy_url_is_fetched_once(client, upstream):
    calls = upstream(lambda request: httpx.Response(200, content=b"ts"))

    response = client.get(
        "/stream-proxy", params={"url": "http://testserver/stream-proxy?url=http://origin.example/a.ts"}
    )

    assert response.status_code == 200
    assert [str(call.url) for call in calls] == ["http://origin.example/a.ts"]


def test_generate_urls_for_streaming_sources(client):
    response = client.post(
        "/generate_urls",
        json={
            "proxy_base_url": "https://proxy.local",
            "streamingSources": [
                {"name": "HD", "url": "https://cdn.example/live/index.m3u8", "type": "hls"},
                {"name": "Backup", "url": "https://cdn2.example/live.mpd", "type": "dash"},
            ],
        },
    )

    assert response.status_code == 200
    proxied = [source["url"] for source in response.json()["streamingSources"]]
    assert proxied == [
        encode_stream_proxy_url("https://proxy.local", "https://cdn.example/live/index.m3u8"),
        encode_stream_proxy_url("https://proxy.local", "https://cdn2.example/live.mpd"),
    ]
    assert response.json()["streamingSources"][1]["type"] == "dash"


def test_generate_urls_defaults_to_request_base(client):
    response = client.post("/generate_urls", json={"streamingSources": [{"url": "https://cdn.example/a.m3u8"}]})

    assert response.json()["streamingSources"][0]["url"].startswith("http://testserver/stream-proxy?url=")


def test_ping_and_health(client):
    assert client.get("/ping").json() == {"message": "Server is alive"}
    assert client.get("/health").json() == {"status": "healthy"}
