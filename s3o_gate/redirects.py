"""
s3o_gate/redirects.py

URLs for the two redirects the gate emits:

  1) to the authority, carrying the URL the user originally asked for:

       {base}/v2/authenticate/?post=true&redirect=<url>&host=<host>

     post=true asks the authority to come back with a form POST
     (username + token in the body) instead of a query-string redirect.

  2) back to the original URL after a successful callback, minus the
     username=<value> parameter the authority appends.

Host, path and query arrive as the raw request bytes decoded as latin-1, so
every character maps back to exactly one byte. Escaping therefore encodes with
latin-1: a raw UTF-8 "é" (b"\\xc3\\xa9") comes out as %C3%A9, not double-encoded.

Values are escaped with quote_plus, which escapes everything except
[A-Za-z0-9_.~-] and turns spaces into '+'.
"""

import string
from typing import Mapping, Optional
from urllib.parse import quote, quote_plus

DEFAULT_AUTHENTICATE_URL = "https://s3o.ft.com/v2/authenticate/"

# printable ASCII passes through a Location untouched, existing escapes included
_LOCATION_SAFE = string.punctuation


def request_scheme(headers: Mapping[str, str], default: str = "http") -> str:
    """
    Scheme the client used, as seen through a TLS-terminating proxy.

    X-Forwarded-Proto saying https wins; otherwise fall back to the connection
    scheme.
    """
    if headers.get("x-forwarded-proto", "").strip().lower() == "https":
        return "https"
    return default or "http"


def original_location(scheme: str, host: str, path: str, query: Optional[str] = None) -> str:
    # fragment never reaches the server, so it is not part of the replay
    location = f"{scheme}://{host}{path}"
    if query:
        location += "?" + query
    return location


def build_auth_redirect(
    scheme: str,
    host: str,
    path: str,
    query: Optional[str] = None,
    authenticate_url: str = DEFAULT_AUTHENTICATE_URL,
) -> str:
    target = original_location(scheme, host, path, query)
    return (
        f"{authenticate_url}?post=true"
        f"&redirect={quote_plus(target, encoding='latin-1')}"
        f"&host={quote_plus(host, encoding='latin-1')}"
    )


def strip_username_param(query: str, username: str) -> str:
    """
    Remove every 'username=<username>' pair from a raw query string.

    Other pairs keep their order and their original encoding. Both the raw and
    the percent-encoded spelling of the username are matched.
    """
    targets = {
        "username=" + username,
        "username=" + quote_plus(username),
        # raw UTF-8 bytes as they sit in a latin-1 decoded query
        "username=" + username.encode("utf-8").decode("latin-1"),
    }
    kept = [part for part in query.split("&") if part and part not in targets]
    return "&".join(kept)


def _escape_raw(text: str) -> str:
    return quote(text, safe=_LOCATION_SAFE, encoding="latin-1")


def clean_callback_url(
    scheme: str,
    host: str,
    path: str,
    query: Optional[str],
    username: str,
) -> str:
    query = strip_username_param(query or "", username)

    # root collapses to empty: scheme://host?query
    if path == "/":
        path = ""

    return original_location(scheme, _escape_raw(host), _escape_raw(path), _escape_raw(query))
