"""
s3o_gate/errors.py

Failure taxonomy for the gate.

Every failure the verifier or the form extraction step can produce is an
AuthError carrying the HTTP status and the one-line plain-text body the
middleware sends back. The middleware is the only place that turns these into
responses.

  BadTokenError           403  token is not valid standard base64
  KeyUnavailableError     403  no public key has ever been fetched
  VerificationFailedError 403  well-formed token, wrong signature
  InternalFailureError    500  local failure (digest, form decoding)
"""


class AuthError(Exception):
    status_code = 403
    message = "failed to authenticate"
    reason = "auth_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)

    @property
    def body(self) -> str:
        return str(self)


class BadTokenError(AuthError):
    message = "failed to decode auth token"
    reason = "bad_token"


class KeyUnavailableError(AuthError):
    message = "public s3o key unavailable"
    reason = "key_unavailable"


class VerificationFailedError(AuthError):
    message = "failed to authenticate"
    reason = "verification_failed"


class InternalFailureError(AuthError):
    status_code = 500
    message = "internal error"
    reason = "internal_failure"


class FormDecodeError(InternalFailureError):
    message = "failed to parse form"
    reason = "form_decode_failed"
