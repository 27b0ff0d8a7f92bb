import socket
from typing import AsyncIterator

import anyio
import httpx
import pytest
import uvicorn
from httpx import AsyncClient

from mediaproxy.config import Config
from mediaproxy.main import make_app
from mediaproxy.upstream import FileDescriptor, Unauthorized
from mediaproxy.upstream.memory import InMemoryUpstream

VIDEO = bytes(i % 251 for i in range(1000))


@pytest.fixture
async def endpoint(fs: InMemoryUpstream) -> AsyncIterator[str]:
    """Fixture to provide the endpoint of the API."""
    app = make_app(fs, Config(upstream="memory", folder_ids=["holiday", "missing"], metadata_timeout=1.0))
    # find an open port
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        port = s.getsockname()[1]

    host = f"http://127.0.0.1:{port}"

    async with AsyncClient(base_url=host) as client:

        async def is_healthy() -> bool:
            try:
                resp = await client.get("/health")
                return resp.status_code == 200
            except Exception:
                return False

        server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port))
        async with anyio.create_task_group() as tg:
            tg.start_soon(server.serve)
            while not (await is_healthy()):
                await anyio.sleep(0.05)

            yield host
            await server.shutdown()
            tg.cancel_scope.cancel()


@pytest.fixture
def video(fs: InMemoryUpstream) -> bytes:
    fs.put("abc", VIDEO, "video/mp4", folder_id="holiday", name="beach.mp4")
    return VIDEO


@pytest.mark.anyio
async def test_head(endpoint: str, video: bytes, fs: InMemoryUpstream) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.head("/files/abc", headers={"Range": "bytes=0-9"})
    assert resp.status_code == 200
    assert resp.headers["Content-Type"] == "video/mp4"
    assert resp.headers["Content-Length"] == "1000"
    assert resp.headers["Accept-Ranges"] == "bytes"
    assert "Content-Range" not in resp.headers
    assert resp.content == b""
    assert fs.opened == 0


@pytest.mark.anyio
async def test_head_not_found(endpoint: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.head("/files/nope")
    assert resp.status_code == 404
    assert resp.content == b""


@pytest.mark.anyio
async def test_download(endpoint: str, video: bytes) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/abc")
    assert resp.status_code == 200
    assert resp.headers["Content-Length"] == "1000"
    assert resp.headers["Accept-Ranges"] == "bytes"
    assert resp.headers["Content-Type"] == "video/mp4"
    assert "Content-Range" not in resp.headers
    assert resp.content == video


@pytest.mark.anyio
async def test_download_range(endpoint: str, video: bytes, fs: InMemoryUpstream) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/abc", headers={"Range": "bytes=500-999"})
    assert resp.status_code == 206
    assert resp.headers["Content-Range"] == "bytes 500-999/1000"
    assert resp.headers["Content-Length"] == "500"
    assert resp.content == video[500:]
    assert fs.closed == fs.opened == 1


@pytest.mark.anyio
@pytest.mark.parametrize("start, end", [(0, 0), (0, 99), (10, 10), (123, 456), (999, 999)])
async def test_download_subranges(endpoint: str, video: bytes, start: int, end: int) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/abc", headers={"Range": f"bytes={start}-{end}"})
    assert resp.status_code == 206
    assert resp.headers["Content-Range"] == f"bytes {start}-{end}/1000"
    assert resp.content == video[start : end + 1]


@pytest.mark.anyio
async def test_ignored_range_from_zero(endpoint: str, video: bytes, fs: InMemoryUpstream) -> None:
    fs.honor_ranges = False
    async with AsyncClient(base_url=endpoint) as client:
        first = await client.get("/files/abc", headers={"Range": "bytes=0-"})
        second = await client.get("/files/abc", headers={"Range": "bytes=0-"})
    for resp in (first, second):
        assert resp.status_code == 206
        assert resp.headers["Content-Range"] == "bytes 0-999/1000"
        assert resp.headers["Content-Length"] == "1000"
        assert resp.content == video


@pytest.mark.anyio
async def test_ignored_range_past_zero(endpoint: str, video: bytes, fs: InMemoryUpstream) -> None:
    fs.honor_ranges = False
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/abc", headers={"Range": "bytes=500-"})
    assert resp.status_code == 200
    assert "Content-Range" not in resp.headers
    assert resp.headers["Content-Length"] == "1000"
    assert resp.content == video


@pytest.mark.anyio
@pytest.mark.parametrize("header", ["bytes=1000-", "bytes=5000-6000", "bytes=20-10", "bytes=x-y"])
async def test_unsatisfiable_range(endpoint: str, video: bytes, fs: InMemoryUpstream, header: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/abc", headers={"Range": header})
    assert resp.status_code == 416
    assert resp.headers["Content-Range"] == "bytes */1000"
    assert resp.content == b""
    assert fs.opened == 0


@pytest.mark.anyio
async def test_not_found(endpoint: str) -> None:
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/nope")
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_unauthorized(endpoint: str, fs: InMemoryUpstream, monkeypatch: pytest.MonkeyPatch) -> None:
    async def refuse(file_id: str) -> FileDescriptor:
        raise Unauthorized(f"no access to {file_id}")

    monkeypatch.setattr(fs, "get_metadata", refuse)
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/abc")
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_slow_metadata_is_transient(endpoint: str, fs: InMemoryUpstream, monkeypatch: pytest.MonkeyPatch) -> None:
    async def stall(file_id: str) -> FileDescriptor:
        await anyio.sleep(5)
        raise AssertionError("metadata fetch was not bounded")

    monkeypatch.setattr(fs, "get_metadata", stall)
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/files/abc")
    assert resp.status_code == 500
    assert fs.opened == 0


@pytest.mark.anyio
async def test_mid_stream_failure_closes_connection(endpoint: str, fs: InMemoryUpstream) -> None:
    fs.put("broken", VIDEO, "video/mp4", fail_after=300)
    async with AsyncClient(base_url=endpoint) as client:
        received = bytearray()
        with pytest.raises(httpx.RemoteProtocolError):
            async with client.stream("GET", "/files/broken") as resp:
                assert resp.status_code == 200
                assert resp.headers["Content-Length"] == "1000"
                async for chunk in resp.aiter_raw():
                    received.extend(chunk)
        assert bytes(received) == VIDEO[:300]
        assert fs.closed == 1

        # the server is still up
        fs.put("fine", b"ok", "image/png")
        resp = await client.get("/files/fine")
        assert resp.status_code == 200
        assert resp.content == b"ok"


@pytest.mark.anyio
async def test_concurrent_requests_are_independent(endpoint: str, fs: InMemoryUpstream) -> None:
    fs.chunk_delay = 0.001
    bodies = {f"file-{i}": bytes([i]) * (2000 + i * 37) for i in range(8)}
    for file_id, body in bodies.items():
        fs.put(file_id, body, "video/webm")
    results: dict[str, httpx.Response] = {}

    async with AsyncClient(base_url=endpoint) as client:

        async def fetch(file_id: str) -> None:
            results[file_id] = await client.get(f"/files/{file_id}", headers={"Range": "bytes=100-"})

        async with anyio.create_task_group() as tg:
            for file_id in bodies:
                tg.start_soon(fetch, file_id)

    for file_id, body in bodies.items():
        resp = results[file_id]
        assert resp.status_code == 206
        assert resp.headers["Content-Range"] == f"bytes 100-{len(body) - 1}/{len(body)}"
        assert resp.content == body[100:]


@pytest.mark.anyio
async def test_list_media(endpoint: str, video: bytes, fs: InMemoryUpstream) -> None:
    fs.folders["holiday"] = "Holiday 2024"
    fs.put("notes", b"text", "text/plain", folder_id="holiday")
    async with AsyncClient(base_url=endpoint) as client:
        resp = await client.get("/api/media")
    assert resp.status_code == 200
    media = resp.json()
    assert [item["id"] for item in media] == ["abc"]
    assert media[0]["url"] == "/files/abc"
    assert media[0]["collection"] == "Holiday 2024"
    assert media[0]["mimeType"] == "video/mp4"
    assert media[0]["name"] == "beach.mp4"


@pytest.mark.anyio
async def test_static_front_end(fs: InMemoryUpstream, tmp_path) -> None:
    (tmp_path / "index.html").write_text("<h1>gallery</h1>")
    fs.put("abc", VIDEO, "video/mp4")
    app = make_app(fs, Config(upstream="memory", static_dir=str(tmp_path)))
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        page = await client.get("/")
        head = await client.head("/files/abc")
    assert page.status_code == 200
    assert "gallery" in page.text
    # api routes win over the static mount
    assert head.status_code == 200
    assert head.headers["Content-Length"] == "1000"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "honor_ranges, header, status, content_range, body",
    [
        (True, None, 200, None, VIDEO),
        (True, "bytes=500-999", 206, "bytes 500-999/1000", VIDEO[500:]),
        (False, "bytes=0-", 206, "bytes 0-999/1000", VIDEO),
        (False, "bytes=500-", 200, None, VIDEO),
    ],
)
async def test_proxied_get_in_process(
    fs: InMemoryUpstream,
    honor_ranges: bool,
    header: str | None,
    status: int,
    content_range: str | None,
    body: bytes,
) -> None:
    fs.honor_ranges = honor_ranges
    fs.put("abc", VIDEO, "video/mp4")
    app = make_app(fs, Config(upstream="memory"))
    headers = {"Range": header} if header else {}
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/files/abc", headers=headers)
    assert resp.status_code == status
    assert resp.headers.get("Content-Range") == content_range
    assert resp.headers["Content-Length"] == str(len(body))
    assert resp.content == body
    assert fs.opened == fs.closed == 1
