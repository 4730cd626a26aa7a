# s3o_gate/main.py
#
# -----------------------------------------------------------------------------
# Demo application
# -----------------------------------------------------------------------------
# A hello-world FastAPI app with every route behind S3OMiddleware.
#
#   uvicorn s3o_gate.main:app --port 8080
#
# Wiring rules:
#   - ONE KeyCache per process, built here and handed to the middleware.
#   - The rotation thread is started by the lifespan, not at import time, so
#     importing this module (tests, tooling) never touches the network.
#   - Routes below never see an unauthenticated request.
# -----------------------------------------------------------------------------

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from .config import settings
from .cookies import COOKIE_USERNAME
from .gate import S3OMiddleware
from .keys import KeyCache

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

key_cache = KeyCache.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    key_cache.start()
    try:
        yield
    finally:
        key_cache.stop(timeout=5)


app = FastAPI(
    title="S3O Gate",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(S3OMiddleware, key_cache=key_cache, settings=settings)


@app.get("/", response_class=PlainTextResponse)
def hello():
    return "hello world\n"


@app.get("/whoami")
def whoami(request: Request):
    # the gate has already verified this cookie against the current key
    return {"username": request.cookies.get(COOKIE_USERNAME)}
