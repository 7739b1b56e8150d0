import argparse
from collections import Counter

import httpx
import pytest
from Cryptodome.Cipher import AES
from Cryptodome.Util.Padding import pad

BASE_URL = "https://cdn.example.com/video/index.m3u8"


def encrypt(data: bytes, key: bytes, iv: bytes) -> bytes:
    return AES.new(key, AES.MODE_CBC, iv).encrypt(pad(data, AES.block_size))


class FakeServer:
    """
    Routes of url -> body (str/bytes), status code (int) or callable
    (request, n_call) -> httpx.Response, counting the requests of every url.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = Counter()

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.calls[url] += 1
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request, self.calls[url])
        if isinstance(route, int):
            return httpx.Response(route)
        return httpx.Response(200, content=route.encode() if isinstance(route, str) else route)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def make_args(tmp_path):
    def _make(**kwargs):
        _args = {
            "url": BASE_URL,
            "path": str(tmp_path / "temp"),
            "output": "main.mp4",
            "concurrency": 4,
            "retries": 3,
            "backoff_factor": 0,
            "backoff_max": 0,
            "timeout": 5,
            "headers": "",
            "useragent": None,
            "proxy": None,
            "checkcert": False,
            "clean_segments": False,
            "log_config": None,
            "verbose": False,
            "quiet": False,
        }
        return argparse.Namespace(**(_args | kwargs))

    return _make
