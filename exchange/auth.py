from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import re
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Protocol

from eth_account import Account
from eth_account.messages import encode_defunct

from engine.utils import now_ms

from .errors import AuthError

logger = logging.getLogger(__name__)


class Signer(Protocol):
    def sign(self, message: str) -> str: ...


class HmacSigner:
    """HMAC-SHA256 over the canonical request string (hex digest)."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("HMAC secret is required")
        self._secret = str(secret).encode("utf-8")

    def sign(self, message: str) -> str:
        return hmac.new(self._secret, str(message).encode("utf-8"), hashlib.sha256).hexdigest()


class EthMessageSigner:
    """EIP-191 personal-message signature with the account's private key.

    Used for the token bootstrap call, which proves identity without a bearer token.
    """

    def __init__(self, private_key: str):
        self._wallet = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return str(self._wallet.address)

    def sign(self, message: str) -> str:
        signed = self._wallet.sign_message(encode_defunct(text=str(message)))
        return "0x" + bytes(signed.signature).hex()


def bootstrap_message(account: str, timestamp_ms: int) -> str:
    return f"paradex-auth:{account}:{int(timestamp_ms)}"


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at_ms: int

    def valid_for(self, skew_ms: int, *, now: int | None = None) -> bool:
        t = now_ms() if now is None else int(now)
        return bool(self.token) and int(self.expires_at_ms) > t + int(skew_ms)


def credential_from_jwt(token: str, *, default_ttl_s: float = 300.0) -> Credential:
    """Wrap a pre-issued JWT, reading its `exp` claim when present (signature is not checked)."""
    tok = str(token or "").strip()
    exp_ms = now_ms() + int(default_ttl_s * 1000)
    parts = tok.split(".")
    if len(parts) == 3:
        seg = parts[1] + "=" * (-len(parts[1]) % 4)
        try:
            claims = json.loads(base64.urlsafe_b64decode(seg.encode("ascii")))
            if isinstance(claims, dict) and claims.get("exp") is not None:
                exp_ms = int(float(claims["exp"]) * 1000)
        except (ValueError, TypeError, binascii.Error):
            logger.debug("could not decode JWT claims; assuming %ss ttl", default_ttl_s)
    return Credential(token=tok, expires_at_ms=exp_ms)


class CredentialCache:
    """Lazily obtained bearer credential with single-flight refresh.

    `get()` returns the cached credential while it is valid for at least `refresh_skew_s`.
    Otherwise exactly one caller runs `refresh_fn`; concurrent callers wait on the same
    in-flight refresh and receive its result (or its error).
    """

    def __init__(
        self,
        refresh_fn: Callable[[], Credential],
        *,
        refresh_skew_s: float = 60.0,
        refresh_wait_s: float = 60.0,
        initial: Credential | None = None,
    ):
        self._refresh_fn = refresh_fn
        self._skew_ms = int(max(0.0, float(refresh_skew_s)) * 1000)
        self._wait_s = float(refresh_wait_s)
        self._lock = threading.Lock()
        self._credential: Credential | None = initial
        self._inflight: Future | None = None
        self.refresh_count = 0

    def peek(self) -> Credential | None:
        with self._lock:
            return self._credential

    def invalidate(self) -> None:
        with self._lock:
            self._credential = None

    def token(self) -> str:
        return self.get().token

    def get(self) -> Credential:
        with self._lock:
            cred = self._credential
            if cred is not None and cred.valid_for(self._skew_ms):
                return cred
            fut = self._inflight
            leader = fut is None
            if leader:
                fut = Future()
                self._inflight = fut
                self.refresh_count += 1

        if not leader:
            try:
                return fut.result(timeout=self._wait_s)
            except FutureTimeout as exc:
                raise AuthError(f"credential refresh still pending after {self._wait_s:.1f}s") from exc

        try:
            cred = self._refresh_fn()
        except Exception as exc:
            err = exc if isinstance(exc, AuthError) else AuthError(f"credential refresh failed: {exc}")
            with self._lock:
                self._inflight = None
            fut.set_exception(err)
            logger.warning("credential refresh failed: %s", exc)
            if err is exc:
                raise
            raise err from exc

        with self._lock:
            self._credential = cred
            self._inflight = None
        fut.set_result(cred)
        logger.debug("credential refreshed (expires_at_ms=%s)", cred.expires_at_ms)
        return cred


@dataclass(frozen=True)
class ExchangeSecrets:
    api_key: str
    api_secret: str
    account_address: str
    private_key: str


_HEX_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40,64}$")


def load_secrets(path: str) -> ExchangeSecrets:
    path = os.path.expanduser(str(path or "").strip())
    # Refuse secrets files that are group/world-readable on Unix.
    st = None
    try:
        st = os.stat(path)
    except FileNotFoundError:
        raise
    except Exception:
        st = None
    if st is not None and os.name != "nt":
        if (int(st.st_mode) & 0o077) != 0:
            raise ValueError(
                f"Secrets file permissions too open: {path} (expected no group/other permissions; suggested: chmod 600)"
            )

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Secrets file must contain a JSON object, got {type(data).__name__}: {path}")

    api_key = str(data.get("api_key") or "").strip()
    api_secret = str(data.get("api_secret") or "").strip()
    account = str(data.get("account_address") or "").strip()
    private_key = str(data.get("private_key") or "").strip()

    if not api_key or not api_secret:
        raise ValueError(f"Missing 'api_key'/'api_secret' in {path}")
    if not account:
        raise ValueError(f"Missing 'account_address' in {path}")
    if not _ADDRESS_RE.match(account):
        raise ValueError(f"Invalid 'account_address' format in {path}: expected 0x-prefixed hex")
    if private_key and not _HEX_KEY_RE.match(private_key):
        raise ValueError(
            f"Invalid 'private_key' format in {path}: expected 64-char hex string (with optional 0x prefix)"
        )

    return ExchangeSecrets(api_key=api_key, api_secret=api_secret, account_address=account, private_key=private_key)
