import base64
import hashlib

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from s3o_gate.config import Settings
from s3o_gate.errors import KeyUnavailableError
from s3o_gate.gate import S3OMiddleware
from s3o_gate.keys import KeyCache


def _unavailable():
    raise KeyUnavailableError("no network in tests")


def sign_for(private_key, username: str, host: str) -> str:
    """Produce a token the way the authority does."""
    digest = hashlib.sha1(f"{username}-{host}".encode("utf-8")).digest()
    sig = private_key.sign(digest, padding.PKCS1v15(), Prehashed(hashes.SHA1()))
    return base64.b64encode(sig).decode("ascii")


@pytest.fixture(scope="session")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def sign(private_key):
    def _sign(username: str, host: str = "example.com", key=None) -> str:
        return sign_for(key or private_key, username, host)

    return _sign


@pytest.fixture
def empty_cache():
    """A cache whose authority is unreachable: get() stays None."""
    return KeyCache(_unavailable)


@pytest.fixture
def key_cache(private_key):
    cache = KeyCache(_unavailable)
    cache.replace(private_key.public_key())
    return cache


class Downstream:
    """Records what actually reached the protected app."""

    def __init__(self):
        self.calls = []


def build_gated_app(key_cache: KeyCache, downstream: Downstream) -> FastAPI:
    app = FastAPI()

    @app.get("/hello-world", response_class=PlainTextResponse)
    def hello(request: Request):
        downstream.calls.append(("GET", request.url.path))
        return "hello secure world"

    @app.post("/hello-world", response_class=PlainTextResponse)
    async def hello_post(request: Request):
        body = await request.body()
        downstream.calls.append(("POST", body))
        return body.decode("utf-8")

    @app.websocket("/ws")
    async def ws(websocket: WebSocket):
        await websocket.accept()
        downstream.calls.append(("WS", websocket.url.path))
        await websocket.send_text("hello secure socket")
        await websocket.close()

    app.add_middleware(
        S3OMiddleware,
        key_cache=key_cache,
        settings=Settings(),
    )
    return app


@pytest.fixture
def downstream():
    return Downstream()


@pytest.fixture
def make_client(downstream):
    def _make(key_cache: KeyCache, base_url: str = "http://example.com") -> TestClient:
        app = build_gated_app(key_cache, downstream)
        return TestClient(app, base_url=base_url, follow_redirects=False)

    return _make


@pytest.fixture
def gated_app(key_cache, downstream):
    """The gated app itself, for driving raw ASGI scopes."""
    return build_gated_app(key_cache, downstream)
