# s3o_gate/gate.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# S3OMiddleware is the request-time decision procedure. It is pure ASGI so it
# can wrap any downstream app (FastAPI, Starlette, anything ASGI).
#
# Per request, first match wins:
#
#   1) callback : POST carrying a non-empty username (form body or query).
#                 The authority is handing back an assertion.
#                   verify ok   -> set cookies, 302 to the URL minus ?username=
#                   verify fail -> status + message, nothing else (fail-closed)
#   2) cookies  : both s3o_username and s3o_token present.
#                   verify ok   -> downstream app, request untouched
#                   verify fail -> expire both cookies, status + message
#   3) nothing  : 302 to the authority with post=true.
#
# This file MUST NOT implement crypto (verifier.py) or URL shapes
# (redirects.py). It is the single place where an AuthError becomes a response.
#
# State: none. Everything lives in the client's cookies and in the KeyCache.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
import re
from typing import NamedTuple, Optional, Tuple
from urllib.parse import parse_qsl, quote

from starlette.requests import HTTPConnection
from starlette.responses import PlainTextResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from .config import Settings, settings as default_settings
from .cookies import invalidate_session, issue_session, no_cache_headers, read_session
from .errors import AuthError, FormDecodeError
from .keys import KeyCache
from .redirects import build_auth_redirect, clean_callback_url, request_scheme
from .verifier import verify_assertion

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# upper bound on a buffered urlencoded body
MAX_FORM_BYTES = 10 * 1024 * 1024

WS_POLICY_VIOLATION = 1008

# '%' not followed by two hex digits
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class CallbackCredentials(NamedTuple):
    username: str
    token: str


# -----------------------------------------------------------------------------
# Request helpers
# -----------------------------------------------------------------------------
def _host(conn: HTTPConnection) -> str:
    host = conn.headers.get("host")
    if host:
        return host
    server = conn.scope.get("server")
    if server:
        name, port = server
        return f"{name}:{port}" if port not in (None, 80, 443) else name
    return ""


def _raw_path(scope: Scope) -> str:
    raw = scope.get("raw_path")
    if raw:
        return raw.decode("latin-1").split("?", 1)[0]
    return quote(scope.get("path", "") or "/")


def check_escapes(raw: str) -> None:
    if _BAD_ESCAPE.search(raw):
        raise FormDecodeError()


def _parse_pairs(raw: str) -> list[Tuple[str, str]]:
    check_escapes(raw)
    try:
        return parse_qsl(raw, keep_blank_values=True, errors="strict")
    except (UnicodeDecodeError, ValueError) as e:
        raise FormDecodeError() from e


def extract_callback(query_string: str, content_type: str, body: bytes) -> Optional[CallbackCredentials]:
    """
    Pull (username, token) out of a POST callback.

    Body values win over query values (form first, then URL), like a merged
    form. Returns None unless username is non-empty. A missing token becomes
    "" and is rejected by the verifier.
    """
    values: dict[str, str] = {}

    if content_type.split(";", 1)[0].strip().lower() == FORM_CONTENT_TYPE and body:
        try:
            decoded = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormDecodeError() from e
        for k, v in _parse_pairs(decoded):
            values.setdefault(k, v)

    for k, v in _parse_pairs(query_string):
        values.setdefault(k, v)

    username = values.get("username", "")
    if not username:
        return None
    return CallbackCredentials(username=username, token=values.get("token", ""))


async def _buffer_body(receive: Receive) -> Tuple[bytes, Receive]:
    """
    Read the whole request body and return a receive() that replays it, so the
    downstream app still sees the original request.
    """
    chunks: list[bytes] = []
    size = 0
    more_body = True
    disconnect: Optional[Message] = None
    while more_body:
        message = await receive()
        if message["type"] != "http.request":
            disconnect = message
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > MAX_FORM_BYTES:
            logger.warning("form body over %d bytes", MAX_FORM_BYTES)
            raise FormDecodeError()
        chunks.append(chunk)
        more_body = message.get("more_body", False)

    body = b"".join(chunks)
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        if disconnect is not None:
            return disconnect
        return await receive()

    return body, replay


# -----------------------------------------------------------------------------
# Middleware
# -----------------------------------------------------------------------------
class S3OMiddleware:
    """
    ASGI middleware that lets a request through only with a verified S3O
    assertion.

    Constructor:
        ``S3OMiddleware(app, key_cache, settings=settings)``

    Lifespan scopes pass through. WebSocket scopes are checked against the
    session cookies only and closed with 1008 on failure.
    """

    def __init__(
        self,
        app: ASGIApp,
        key_cache: KeyCache,
        settings: Settings = default_settings,
    ) -> None:
        self.app = app
        self.key_cache = key_cache
        self.settings = settings

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            await self._gate_http(scope, receive, send)
        elif scope["type"] == "websocket":
            await self._gate_websocket(scope, receive, send)
        else:
            await self.app(scope, receive, send)

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    async def _gate_http(self, scope: Scope, receive: Receive, send: Send) -> None:
        conn = HTTPConnection(scope)
        host = _host(conn)
        path = _raw_path(scope)
        query = scope.get("query_string", b"").decode("latin-1")

        try:
            # the query is form input on every method, callback or not
            check_escapes(query)
            creds, receive = await self._read_callback(scope, conn, receive, query)
        except FormDecodeError as e:
            logger.warning("rejecting request to %s%s: %s", host, path, e)
            await self._reject(e)(scope, receive, send)
            return

        # 1) callback from the authority
        if creds is not None:
            response = self._handle_callback(conn, creds, host, path, query)
            await response(scope, receive, send)
            return

        # 2) existing session
        session = read_session(conn)
        if session is not None:
            username, token = session
            try:
                verify_assertion(self.key_cache, username, token, host)
            except AuthError as e:
                logger.info("s3o session rejected for %s on %s: %s", username or "-", host, e.reason)
                response = self._reject(e)
                invalidate_session(conn, response)
                await response(scope, receive, send)
                return

            await self.app(scope, receive, send)
            return

        # 3) no credentials: send the user to the authority
        scheme = request_scheme(conn.headers, scope.get("scheme", "http"))
        location = build_auth_redirect(
            scheme,
            host,
            path,
            query,
            authenticate_url=self.settings.authenticate_url,
        )
        logger.debug("redirecting %s%s to the s3o authority", host, path)
        response = RedirectResponse(location, status_code=302, headers=no_cache_headers())
        await response(scope, receive, send)

    async def _read_callback(
        self,
        scope: Scope,
        conn: HTTPConnection,
        receive: Receive,
        query: str,
    ) -> Tuple[Optional[CallbackCredentials], Receive]:
        if scope.get("method") != "POST":
            return None, receive

        content_type = conn.headers.get("content-type", "")
        body = b""
        if content_type.split(";", 1)[0].strip().lower() == FORM_CONTENT_TYPE:
            body, receive = await _buffer_body(receive)

        try:
            text_query = query.encode("latin-1").decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormDecodeError() from e

        return extract_callback(text_query, content_type, body), receive

    def _handle_callback(
        self,
        conn: HTTPConnection,
        creds: CallbackCredentials,
        host: str,
        path: str,
        query: str,
    ) -> Response:
        try:
            verify_assertion(self.key_cache, creds.username, creds.token, host)
        except AuthError as e:
            # fail-closed: no cookies, no redirect
            logger.info("s3o callback rejected for %s on %s: %s", creds.username, host, e.reason)
            return self._reject(e)

        scheme = request_scheme(conn.headers, conn.scope.get("scheme", "http"))
        location = clean_callback_url(scheme, host, path, query, creds.username)

        response = RedirectResponse(location, status_code=302, headers=no_cache_headers())
        issue_session(
            response,
            creds.username,
            creds.token,
            max_age=self.settings.COOKIE_MAX_AGE_SECONDS,
        )
        logger.info("s3o session issued for %s on %s", creds.username, host)
        return response

    @staticmethod
    def _reject(err: AuthError) -> Response:
        return PlainTextResponse(err.body, status_code=err.status_code, headers=no_cache_headers())

    # -------------------------------------------------------------------------
    # WebSocket
    # -------------------------------------------------------------------------
    async def _gate_websocket(self, scope: Scope, receive: Receive, send: Send) -> None:
        conn = HTTPConnection(scope)
        host = _host(conn)

        session = read_session(conn)
        if session is None:
            logger.info("s3o websocket without session on %s", host)
            await WebSocketClose(code=WS_POLICY_VIOLATION)(scope, receive, send)
            return

        username, token = session
        try:
            verify_assertion(self.key_cache, username, token, host)
        except AuthError as e:
            logger.info("s3o websocket rejected for %s on %s: %s", username or "-", host, e.reason)
            await WebSocketClose(code=WS_POLICY_VIOLATION)(scope, receive, send)
            return

        await self.app(scope, receive, send)
