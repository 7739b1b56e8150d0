"""End to end runs of AsyncDL over a fake CDN."""

import asyncio
from pathlib import Path

import pytest

from async_all import main
from asyncdl import AsyncDL
from hlsresolver import KeyFetchError

from conftest import BASE_URL, encrypt

KEY = b"fedcba9876543210"
IV_HEX = "0x000102030405060708090a0b0c0d0e0f"
IV = bytes(range(16))

MASTER = "#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=2000000,RESOLUTION=1920x1080\n1080/index.m3u8\n"
MEDIA = (
    "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:6\n"
    f'#EXT-X-KEY:METHOD=AES-128,URI="/keys/k1",IV={IV_HEX}\n'
    "#EXTINF:6.0,\nseg-0.ts\n#EXTINF:6.0,\nseg-1.ts\n#EXTINF:6.0,\nseg-2.ts\n#EXT-X-ENDLIST\n"
)


def payload(n: int) -> bytes:
    return b"\x47\x40\x11\x10" + bytes([n]) * 184


@pytest.fixture
def cdn(server):
    server.routes |= {
        BASE_URL: MASTER,
        "https://cdn.example.com/video/1080/index.m3u8": MEDIA,
        "https://cdn.example.com/keys/k1": KEY,
    }
    server.routes |= {
        f"https://cdn.example.com/video/1080/seg-{i}.ts": encrypt(payload(i), KEY, IV) for i in range(3)
    }
    return server


def test_master_to_final_file(cdn, make_args):
    args = make_args()
    asyncdl = AsyncDL(args, client=cdn.client(), async_client=cdn.async_client())
    report = asyncio.run(asyncdl.async_ex())

    assert report.ok
    assert asyncdl.get_results_info()
    assert Path(args.path, "main.mp4").read_bytes() == payload(0) + payload(1) + payload(2)
    assert cdn.calls["https://cdn.example.com/keys/k1"] == 1
    assert asyncdl.hlsdl.status == "done"


def test_failed_segment_reported(cdn, make_args):
    cdn.routes["https://cdn.example.com/video/1080/seg-1.ts"] = 404
    args = make_args(retries=2)
    asyncdl = AsyncDL(args, client=cdn.client(), async_client=cdn.async_client())
    report = asyncio.run(asyncdl.async_ex())

    assert not asyncdl.get_results_info()
    assert [res.index for res in report.failed] == [1]
    assert Path(args.path, "main.mp4").read_bytes() == payload(0) + payload(2)


def test_resolution_error_is_fatal(cdn, make_args):
    cdn.routes["https://cdn.example.com/keys/k1"] = 403
    args = make_args()
    asyncdl = AsyncDL(args, client=cdn.client(), async_client=cdn.async_client())
    with pytest.raises(KeyFetchError):
        asyncio.run(asyncdl.async_ex())
    assert not asyncdl.get_results_info()
    assert not Path(args.path).exists()


def test_main_invalid_url(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert main(["ftp://cdn.example.com/index.m3u8", "--path", str(tmp_path / "temp"), "-q"]) == 1


def test_main_runs_on_uvloop(cdn, monkeypatch, tmp_path):
    import async_all

    monkeypatch.chdir(tmp_path)
    loops = []

    def _run(coro):
        loops.append(coro)
        return asyncio.run(coro)

    def _asyncdl(args):
        return AsyncDL(args, client=cdn.client(), async_client=cdn.async_client())

    monkeypatch.setattr(async_all.uvloop, "run", _run)
    monkeypatch.setattr(async_all, "AsyncDL", _asyncdl)
    assert main([BASE_URL, "--path", str(tmp_path / "temp"), "--retries", "1", "-q"]) == 0
    assert len(loops) == 1
    assert Path(tmp_path, "temp", "main.mp4").read_bytes() == payload(0) + payload(1) + payload(2)
