from __future__ import annotations

import http.client
import json
import logging
import os
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any

from engine.utils import Backoff, env_float, env_int, now_ms

from .auth import Credential, CredentialCache, Signer, bootstrap_message
from .errors import AuthError, NetworkError, OrderSubmissionAmbiguous, ProtocolError

logger = logging.getLogger(__name__)

REST_URL = os.getenv("PARADEX_REST_URL", "https://api.testnet.paradex.trade/v1")

# Reads and cancels are safe to repeat; order placement is not.
_IDEMPOTENT_METHODS = frozenset({"GET", "DELETE"})
_RETRYABLE_STATUS = frozenset({429})


@dataclass
class RestResult:
    data: Any
    status: int
    fetched_at_ms: int


def _request_was_sent(exc: BaseException) -> bool:
    """Best-effort classification of a transport failure.

    urllib wraps connect/send failures in URLError; failures while waiting for the response
    (read timeout, reset, RemoteDisconnected) surface unwrapped. Only the former guarantees the
    exchange never processed the request.
    """
    if isinstance(exc, urllib.error.HTTPError):
        return True
    if isinstance(exc, urllib.error.URLError):
        return False
    return True


def _error_message(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace") if raw else ""
    try:
        obj = json.loads(text)
    except (TypeError, ValueError):
        return text[:500]
    if isinstance(obj, dict):
        for k in ("message", "error", "detail"):
            if obj.get(k):
                return str(obj.get(k))[:500]
    return text[:500]


def _expiry_to_ms(raw: Any, *, default_ttl_s: float = 300.0) -> int:
    try:
        v = int(float(raw))
    except (TypeError, ValueError):
        return now_ms() + int(default_ttl_s * 1000)
    # Seconds vs milliseconds epoch.
    return v * 1000 if v < 10**12 else v


class SignedRequestClient:
    """Signed REST client with a cached bearer credential.

    Retry semantics:
    - idempotent calls (GET/DELETE by default) retry on transport failures and 5xx/429;
    - non-idempotent calls retry only when the request provably never left the process.
      A transport failure after sending raises OrderSubmissionAmbiguous. Any HTTP response,
      including an error, is final.
    """

    def __init__(
        self,
        *,
        base_url: str = REST_URL,
        api_key: str = "",
        signer: Signer | None = None,
        account: str = "",
        bootstrap_signer: Signer | None = None,
        credentials: CredentialCache | None = None,
        initial_credential: Credential | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        refresh_skew_s: float | None = None,
        backoff: Backoff | None = None,
        auth_path: str = "/auth/jwt",
    ):
        self._base_url = str(base_url).rstrip("/")
        self._api_key = str(api_key or "")
        self._signer = signer
        self._account = str(account or "").strip()
        self._bootstrap_signer = bootstrap_signer
        self._auth_path = str(auth_path)

        t = env_float("PARADEX_REST_TIMEOUT_S", 30.0) if timeout_s is None else float(timeout_s)
        self._timeout_s = max(0.2, min(float(t), 120.0))
        r = env_int("PARADEX_REST_RETRIES", 3) if max_retries is None else int(max_retries)
        self._max_retries = max(1, min(10, int(r)))
        self._backoff = backoff or Backoff(base_s=1.0, max_s=15.0, jitter_pct=0.25)

        skew = env_float("PARADEX_REST_REFRESH_SKEW_S", 60.0) if refresh_skew_s is None else float(refresh_skew_s)
        self.credentials = credentials or CredentialCache(
            self._refresh_credential, refresh_skew_s=skew, initial=initial_credential
        )

    # ------------------------------------------------------------------
    # Credential bootstrap
    # ------------------------------------------------------------------

    def _refresh_credential(self) -> Credential:
        if not self._account or self._bootstrap_signer is None:
            raise AuthError("no account / bootstrap signer configured for token refresh")
        ts = now_ms()
        payload = {
            "account": self._account,
            "timestamp": ts,
            "signature": self._bootstrap_signer.sign(bootstrap_message(self._account, ts)),
        }
        # The signed body is single-use, so the bootstrap is never replayed after a response.
        try:
            res = self.call("POST", self._auth_path, payload, authenticated=False, idempotent=False)
        except (NetworkError, ProtocolError) as exc:
            raise AuthError(f"token bootstrap failed: {exc}") from exc
        data = res.data if isinstance(res.data, dict) else {}
        token = str(data.get("jwt_token") or data.get("jwt") or "").strip()
        if not token:
            raise AuthError("token bootstrap returned no token")
        return Credential(token=token, expires_at_ms=_expiry_to_ms(data.get("expires_at")))

    # ------------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(method: str, path: str, params: dict[str, Any] | None) -> tuple[str, str]:
        if not params:
            return path, ""
        if method in {"GET", "DELETE"}:
            # Sorted for deterministic signatures.
            clean = {k: v for k, v in params.items() if v is not None}
            q = urllib.parse.urlencode(sorted((k, str(v)) for k, v in clean.items()))
            if not q:
                return path, ""
            sep = "&" if "?" in path else "?"
            return f"{path}{sep}{q}", ""
        return path, json.dumps(params, separators=(",", ":"))

    def sign_headers(self, method: str, path: str, body: str, *, authenticated: bool) -> dict[str, str]:
        """Headers for one attempt. The timestamp is fresh on every call."""
        ts = str(now_ms())
        headers = {"Content-Type": "application/json", "X-TIMESTAMP": ts}
        if self._api_key:
            headers["X-API-KEY"] = self._api_key
        if self._signer is not None:
            headers["X-SIGNATURE"] = self._signer.sign(ts + method + path + body)
        if authenticated:
            headers["Authorization"] = f"Bearer {self.credentials.token()}"
        return headers

    def call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        authenticated: bool = True,
        idempotent: bool | None = None,
        timeout_s: float | None = None,
    ) -> RestResult:
        m = str(method).upper()
        idem = (m in _IDEMPOTENT_METHODS) if idempotent is None else bool(idempotent)
        signed_path, body = self._encode(m, path, params)
        url = self._base_url + signed_path
        data = body.encode("utf-8") if body else None
        effective_timeout = self._timeout_s if timeout_s is None else max(0.2, float(timeout_s))
        label = f"{m} {path}"

        for attempt in range(1, self._max_retries + 1):
            last = attempt >= self._max_retries
            headers = self.sign_headers(m, signed_path, body, authenticated=authenticated)
            req = urllib.request.Request(url, data=data, headers=headers, method=m)
            try:
                with urllib.request.urlopen(req, timeout=effective_timeout) as resp:
                    status = int(getattr(resp, "status", 200) or 200)
                    raw = resp.read()
            except urllib.error.HTTPError as e:
                status = int(getattr(e, "code", 0) or 0)
                try:
                    raw = e.read() or b""
                except Exception:
                    raw = b""
                msg = _error_message(raw)
                if status in (401, 403):
                    if authenticated:
                        self.credentials.invalidate()
                    raise AuthError(f"{label} rejected with HTTP {status}: {msg}") from e
                if idem and (500 <= status < 600 or status in _RETRYABLE_STATUS) and not last:
                    logger.debug("%s HTTP %s (attempt %d), retrying", label, status, attempt)
                    time.sleep(self._backoff.delay(attempt))
                    continue
                raise ProtocolError(status, msg, method=label) from e
            except (urllib.error.URLError, OSError, http.client.HTTPException) as e:
                sent = _request_was_sent(e)
                if idem or not sent:
                    if not last:
                        logger.debug("%s network error (attempt %d, sent=%s): %s", label, attempt, sent, e)
                        time.sleep(self._backoff.delay(attempt))
                        continue
                    raise NetworkError(f"{label} failed: {e}", request_sent=sent, method=m, path=path) from e
                logger.warning("%s sent but no response received: %s", label, e)
                raise OrderSubmissionAmbiguous(
                    f"{label} outcome unknown: {e}", request_sent=True, method=m, path=path
                ) from e

            try:
                payload = json.loads(raw) if raw else None
            except ValueError as e:
                raise ProtocolError(status, f"invalid JSON response: {raw[:200]!r}", method=label) from e
            return RestResult(data=payload, status=status, fetched_at_ms=now_ms())

        raise NetworkError(f"{label} failed after {self._max_retries} attempts", method=m, path=path)
