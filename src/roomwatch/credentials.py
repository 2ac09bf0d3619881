"""Rotating database credentials derived from a static login.

When the configured password equals ``login + suffix`` and the port equals the
sentinel port, the real credentials are derived at connect time::

    username = base64(xor(f"{login}|{issued_at}", xor_key))
    password = hex(hmac_sha256(secret_key, username))

The derived pair is only accepted by the server for ``ttl_s`` seconds, after
which the pool has to be rebuilt with a fresh pair.  Any other password is
used verbatim and never expires.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import math
import time
from dataclasses import dataclass

DEFAULT_CREDENTIAL_SUFFIX = "88888888"
DEFAULT_SECRET_KEY = "88888888"
DEFAULT_XOR_KEY = "88888888"
DEFAULT_SENTINEL_PORT = 51888
DEFAULT_CREDENTIAL_TTL_S = 600

NEVER_EXPIRES = math.inf


@dataclass(frozen=True)
class EphemeralCredential:
    """A username/password pair plus the epoch second it was issued at.

    ``issued_at`` is ``math.inf`` for verbatim credentials.
    """

    username: str
    password: str
    issued_at: float

    @property
    def derived(self) -> bool:
        return self.issued_at != NEVER_EXPIRES

    def is_expired(self, ttl_s: float, now: float | None = None) -> bool:
        if not self.derived:
            return False
        current = int(time.time()) if now is None else now
        return current - self.issued_at > ttl_s

    def __repr__(self) -> str:
        return f"EphemeralCredential(username={self.username!r}, issued_at={self.issued_at!r})"


def xor_bytes(data: bytes, key: bytes) -> bytes:
    """XOR *data* with *key* repeated to the length of *data*."""
    if not key:
        raise ValueError("xor key must not be empty")
    return bytes(b ^ key[i % len(key)] for i, b in enumerate(data))


def encode_username(login: str, issued_at: int, xor_key: str = DEFAULT_XOR_KEY) -> str:
    raw = f"{login}|{issued_at}".encode()
    return base64.b64encode(xor_bytes(raw, xor_key.encode())).decode("ascii")


def sign_username(username: str, secret_key: str = DEFAULT_SECRET_KEY) -> str:
    return hmac.new(secret_key.encode(), username.encode(), hashlib.sha256).hexdigest()


def should_derive(
    login: str,
    password: str,
    port: int,
    *,
    suffix: str = DEFAULT_CREDENTIAL_SUFFIX,
    sentinel_port: int = DEFAULT_SENTINEL_PORT,
) -> bool:
    """Return True when *password*/*port* match the rotating-credential trigger."""
    return password == login + suffix and port == sentinel_port


def build_credential(
    login: str,
    password: str,
    port: int,
    *,
    suffix: str = DEFAULT_CREDENTIAL_SUFFIX,
    secret_key: str = DEFAULT_SECRET_KEY,
    xor_key: str = DEFAULT_XOR_KEY,
    sentinel_port: int = DEFAULT_SENTINEL_PORT,
    now: int | None = None,
) -> EphemeralCredential:
    """Return the credentials to connect with.

    Parameters
    ----------
    login, password, port:
        The configured values.
    now:
        Issue timestamp in epoch seconds; defaults to the current time.
    """
    if not should_derive(login, password, port, suffix=suffix, sentinel_port=sentinel_port):
        return EphemeralCredential(username=login, password=password, issued_at=NEVER_EXPIRES)

    issued_at = int(time.time()) if now is None else now
    username = encode_username(login, issued_at, xor_key)
    return EphemeralCredential(
        username=username,
        password=sign_username(username, secret_key),
        issued_at=issued_at,
    )
