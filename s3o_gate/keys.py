# s3o_gate/keys.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# This module owns the S3O public key.
#
# Responsibilities:
#   - Fetch the base64 DER public key from the authority (httpx)
#   - Hold exactly one current key behind a read-write lock
#   - Rotate it from a single background thread on a configurable period
#
# What this module is NOT:
#   - Not a verifier (see verifier.py)
#   - Not a key set: a new key replaces the old one, there is no kid lookup
#
# Failure model:
#   - A failed fetch keeps the previous key and is logged. The loop never dies
#     and retries on the next tick, whatever the failure was.
#   - Requests never wait on a fetch; they see either a key or None.
# -----------------------------------------------------------------------------

from __future__ import annotations

import base64
import binascii
import functools
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import httpx
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey
from cryptography.hazmat.primitives.serialization import load_der_public_key

from .config import Settings
from .errors import KeyUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_SECONDS = 300.0

KeyFetcher = Callable[[], RSAPublicKey]


# -----------------------------------------------------------------------------
# Locking
# -----------------------------------------------------------------------------
class ReadWriteLock:
    """
    Many concurrent readers, one exclusive writer.

    A waiting writer blocks new readers, so a steady stream of requests cannot
    starve key rotation.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# -----------------------------------------------------------------------------
# Fetch
# -----------------------------------------------------------------------------
def fetch_public_key(url: str, client: Optional[httpx.Client] = None) -> RSAPublicKey:
    """
    Fetch and parse the authority's public key.

    Wire format: standard base64 of a DER SubjectPublicKeyInfo, possibly
    wrapped or newline-terminated.

    Raises KeyUnavailableError for any network, decode or parse failure.
    """
    try:
        if client is None:
            resp = httpx.get(url)
        else:
            resp = client.get(url)
    except httpx.HTTPError as e:
        raise KeyUnavailableError(f"failed to read s3o public key: {e}") from e

    if resp.status_code != 200:
        raise KeyUnavailableError(f"failed to read s3o public key: HTTP {resp.status_code}")

    blob = "".join(resp.text.split())
    try:
        der = base64.b64decode(blob, validate=True)
    except (binascii.Error, ValueError) as e:
        raise KeyUnavailableError("failed to base64 decode s3o public key") from e

    try:
        key = load_der_public_key(der)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyUnavailableError("failed to parse s3o public key") from e

    if not isinstance(key, RSAPublicKey):
        raise KeyUnavailableError("s3o public key is not an RSA key")
    return key


# -----------------------------------------------------------------------------
# Cache
# -----------------------------------------------------------------------------
class KeyCache:
    """
    The current S3O verification key plus the loop that keeps it fresh.

    One instance is built at startup and shared by every request context and
    by the rotation thread.
    """

    def __init__(
        self,
        fetcher: KeyFetcher,
        refresh_period: float = DEFAULT_REFRESH_SECONDS,
    ) -> None:
        if refresh_period <= 0:
            raise ValueError("refresh period must be > 0")
        self._fetcher = fetcher
        self._lock = ReadWriteLock()
        self._key: Optional[RSAPublicKey] = None
        self._period = float(refresh_period)

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyCache":
        fetcher = functools.partial(fetch_public_key, settings.public_key_url)
        return cls(fetcher, refresh_period=settings.KEY_REFRESH_SECONDS)

    def get(self) -> Optional[RSAPublicKey]:
        with self._lock.read():
            return self._key

    def replace(self, key: RSAPublicKey) -> None:
        with self._lock.write():
            self._key = key

    @property
    def refresh_period(self) -> float:
        with self._lock.read():
            return self._period

    def set_refresh_period(self, seconds: float) -> None:
        """Change the rotation period. Applies from the loop's next sleep."""
        if seconds <= 0:
            raise ValueError("refresh period must be > 0")
        with self._lock.write():
            self._period = float(seconds)

    def refresh(self) -> bool:
        """Fetch once. On failure the previous key stays in place."""
        try:
            key = self._fetcher()
        except KeyUnavailableError as e:
            logger.warning("failed to fetch s3o public key: %s", e)
            return False
        except Exception:
            logger.exception("unexpected error fetching s3o public key")
            return False

        self.replace(key)
        logger.info("s3o public key refreshed")
        return True

    # -------------------------------------------------------------------------
    # Background rotation
    # -------------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> threading.Thread:
        """Start the rotation thread. Calling it again returns the same thread."""
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return self._thread
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="s3o-key-rotation",
                daemon=True,
            )
            self._thread.start()
            return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        with self._start_lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.refresh()
            if self._stop.wait(self.refresh_period):
                break
