# s3o_gate/cookies.py
#
# Session cookies: s3o_username + s3o_token.
#
# The cookies carry the assertion itself, not a server-side session id. They
# are re-verified on every request; holding them proves nothing by itself.

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from starlette.requests import HTTPConnection
from starlette.responses import Response

COOKIE_USERNAME = "s3o_username"
COOKIE_TOKEN = "s3o_token"
SESSION_COOKIES = (COOKIE_USERNAME, COOKIE_TOKEN)

DEFAULT_MAX_AGE = 900000


def no_cache_headers() -> Dict[str, str]:
    """Headers for every redirect / rejection, so no cache replays an auth decision."""
    return {
        "Cache-Control": "private, no-cache, no-store, must-revalidate",
        "Pragma": "no-cache",
        "Expires": "0",
    }


def issue_session(
    response: Response,
    username: str,
    token: str,
    max_age: int = DEFAULT_MAX_AGE,
) -> None:
    response.set_cookie(COOKIE_USERNAME, username, max_age=max_age, httponly=True)
    response.set_cookie(COOKIE_TOKEN, token, max_age=max_age, httponly=True)


def read_session(conn: HTTPConnection) -> Optional[Tuple[str, str]]:
    """
    Return (username, token) only when BOTH cookies are present.

    An empty value still counts as present: it is verified (and rejected) like
    any other value instead of silently falling back to a redirect.
    """
    cookies = conn.cookies
    if COOKIE_USERNAME not in cookies or COOKIE_TOKEN not in cookies:
        return None
    return cookies[COOKIE_USERNAME], cookies[COOKIE_TOKEN]


def invalidate_session(conn: HTTPConnection, response: Response) -> None:
    # empty value + expiry in the past makes the browser drop the cookie
    expired = datetime.now(timezone.utc) - timedelta(hours=1)
    for name in SESSION_COOKIES:
        if name in conn.cookies:
            response.set_cookie(name, "", expires=expired, httponly=True)
