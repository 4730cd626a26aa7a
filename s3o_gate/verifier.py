"""
s3o_gate/verifier.py

S3O assertion verification.

An assertion is (username, token, host). The authority signs

    SHA-1( utf8(username + "-" + host) )

with RSA PKCS#1 v1.5 and hands the signature to the browser as standard
base64. SHA-1 is what the authority signs; it is kept for wire compatibility.

verify_assertion() is a pure function of its inputs and the key currently held
by the KeyCache. It raises an AuthError subclass on every failure and never
anything else.
"""

import base64
import binascii
import hashlib

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from .errors import (
    BadTokenError,
    InternalFailureError,
    KeyUnavailableError,
    VerificationFailedError,
)
from .keys import KeyCache


def decode_token(token: str) -> bytes:
    """Strict standard base64 (padding required, no URL-safe alphabet)."""
    try:
        return base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as e:
        raise BadTokenError() from e


def assertion_digest(username: str, host: str) -> bytes:
    try:
        payload = f"{username}-{host}".encode("utf-8")
        return hashlib.sha1(payload).digest()
    except (UnicodeEncodeError, ValueError) as e:
        # lone surrogates from a lenient decoder, or SHA-1 disabled (FIPS)
        raise InternalFailureError("failed to hash user") from e


def verify_assertion(key_cache: KeyCache, username: str, token: str, host: str) -> None:
    signature = decode_token(token)
    digest = assertion_digest(username, host)

    key = key_cache.get()
    if key is None:
        raise KeyUnavailableError()

    try:
        key.verify(signature, digest, padding.PKCS1v15(), Prehashed(hashes.SHA1()))
    except InvalidSignature as e:
        raise VerificationFailedError() from e
