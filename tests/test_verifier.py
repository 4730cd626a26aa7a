import base64

import pytest

from s3o_gate.errors import (
    BadTokenError,
    InternalFailureError,
    KeyUnavailableError,
    VerificationFailedError,
)
from s3o_gate.verifier import assertion_digest, verify_assertion


@pytest.mark.parametrize(
    "username,host",
    [
        ("bob", "example.com"),
        ("jane.doe", "app.example.com:8443"),
        ("ünïcödé", "example.com"),
        ("", "example.com"),
    ],
)
def test_authority_tokens_verify(key_cache, sign, username, host):
    verify_assertion(key_cache, username, sign(username, host), host)


def test_flipped_signature_bit_fails(key_cache, sign):
    sig = bytearray(base64.b64decode(sign("bob")))
    sig[len(sig) // 2] ^= 0x01
    token = base64.b64encode(bytes(sig)).decode("ascii")

    with pytest.raises(VerificationFailedError):
        verify_assertion(key_cache, "bob", token, "example.com")


@pytest.mark.parametrize(
    "username,host",
    [
        ("bob2", "example.com"),
        ("Bob", "example.com"),
        ("bob", "example.org"),
        ("bob", "example.com:80"),
    ],
)
def test_token_bound_to_username_and_host(key_cache, sign, username, host):
    token = sign("bob", "example.com")

    with pytest.raises(VerificationFailedError):
        verify_assertion(key_cache, username, token, host)


def test_other_key_fails(key_cache, sign, other_private_key):
    with pytest.raises(VerificationFailedError):
        verify_assertion(key_cache, "bob", sign("bob", key=other_private_key), "example.com")


@pytest.mark.parametrize("token", ["not*base64", "abc", "YWJj\n", "ü"])
def test_undecodable_token(key_cache, token):
    with pytest.raises(BadTokenError) as exc:
        verify_assertion(key_cache, "bob", token, "example.com")

    assert exc.value.status_code == 403
    assert str(exc.value) == "failed to decode auth token"


def test_bad_token_reported_before_missing_key(empty_cache):
    with pytest.raises(BadTokenError):
        verify_assertion(empty_cache, "bob", "not*base64", "example.com")


def test_no_key(empty_cache, sign):
    with pytest.raises(KeyUnavailableError) as exc:
        verify_assertion(empty_cache, "bob", sign("bob"), "example.com")

    assert exc.value.status_code == 403
    assert exc.value.body == "public s3o key unavailable"


def test_empty_token_without_key(empty_cache):
    with pytest.raises(KeyUnavailableError):
        verify_assertion(empty_cache, "", "", "example.com")


def test_empty_token_with_key(key_cache):
    with pytest.raises(VerificationFailedError):
        verify_assertion(key_cache, "bob", "", "example.com")


def test_unencodable_username_is_internal(key_cache, sign):
    with pytest.raises(InternalFailureError) as exc:
        verify_assertion(key_cache, "bob\udcff", sign("bob"), "example.com")

    assert exc.value.status_code == 500
    assert str(exc.value) == "failed to hash user"


def test_digest_is_sha1_of_username_dash_host():
    import hashlib

    assert assertion_digest("bob", "example.com") == hashlib.sha1(b"bob-example.com").digest()


def test_rotation_retires_old_tokens(key_cache, sign, other_private_key):
    old_token = sign("bob")
    verify_assertion(key_cache, "bob", old_token, "example.com")

    key_cache.replace(other_private_key.public_key())

    with pytest.raises(VerificationFailedError):
        verify_assertion(key_cache, "bob", old_token, "example.com")
    verify_assertion(key_cache, "bob", sign("bob", key=other_private_key), "example.com")
