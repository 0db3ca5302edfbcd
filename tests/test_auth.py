from __future__ import annotations

import base64
import json
import os
import threading

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from engine.utils import now_ms
from exchange.auth import (
    Credential,
    CredentialCache,
    EthMessageSigner,
    HmacSigner,
    bootstrap_message,
    credential_from_jwt,
    load_secrets,
)
from exchange.errors import AuthError


def test_valid_credential_is_reused_without_refresh():
    calls = 0

    def _refresh():
        nonlocal calls
        calls += 1
        return Credential(token="new", expires_at_ms=now_ms() + 600_000)

    cache = CredentialCache(_refresh, initial=Credential(token="cached", expires_at_ms=now_ms() + 600_000))

    assert cache.token() == "cached"
    assert cache.token() == "cached"
    assert calls == 0


def test_credential_inside_refresh_skew_is_refreshed():
    cache = CredentialCache(
        lambda: Credential(token="fresh", expires_at_ms=now_ms() + 600_000),
        refresh_skew_s=60,
        initial=Credential(token="stale", expires_at_ms=now_ms() + 30_000),
    )

    assert cache.token() == "fresh"
    assert cache.refresh_count == 1


def test_concurrent_callers_share_one_refresh():
    started = threading.Event()
    release = threading.Event()
    calls = 0

    def _refresh():
        nonlocal calls
        calls += 1
        started.set()
        assert release.wait(5.0)
        return Credential(token="shared", expires_at_ms=now_ms() + 600_000)

    cache = CredentialCache(_refresh, refresh_skew_s=60, initial=Credential(token="old", expires_at_ms=now_ms() + 30_000))
    results: list[str] = []

    def _worker():
        results.append(cache.token())

    first = threading.Thread(target=_worker)
    first.start()
    assert started.wait(5.0)
    second = threading.Thread(target=_worker)
    second.start()
    # Give the follower time to reach the in-flight wait.
    second.join(timeout=0.1)
    release.set()
    first.join(timeout=5.0)
    second.join(timeout=5.0)

    assert calls == 1
    assert results == ["shared", "shared"]


def test_follower_wait_timeout_is_auth_error():
    started = threading.Event()
    release = threading.Event()

    def _refresh():
        started.set()
        assert release.wait(5.0)
        return Credential(token="late", expires_at_ms=now_ms() + 600_000)

    cache = CredentialCache(_refresh, refresh_wait_s=0.05)
    leader = threading.Thread(target=cache.get)
    leader.start()
    assert started.wait(5.0)
    try:
        with pytest.raises(AuthError, match="still pending"):
            cache.get()
    finally:
        release.set()
        leader.join(timeout=5.0)

    assert cache.token() == "late"
    assert cache.refresh_count == 1


def test_refresh_failure_is_auth_error_and_not_cached():
    attempts = 0

    def _refresh():
        nonlocal attempts
        attempts += 1
        raise RuntimeError("bootstrap down")

    cache = CredentialCache(_refresh)
    with pytest.raises(AuthError):
        cache.get()
    with pytest.raises(AuthError):
        cache.get()
    assert attempts == 2
    assert cache.peek() is None


def test_invalidate_forces_refresh():
    cache = CredentialCache(
        lambda: Credential(token="second", expires_at_ms=now_ms() + 600_000),
        initial=Credential(token="first", expires_at_ms=now_ms() + 600_000),
    )
    cache.invalidate()
    assert cache.token() == "second"


def test_hmac_signer_is_deterministic_hex_sha256():
    signer = HmacSigner("secret")
    sig = signer.sign("1700000000000GET/account")
    assert sig == signer.sign("1700000000000GET/account")
    assert len(sig) == 64
    assert sig != signer.sign("1700000000001GET/account")
    with pytest.raises(ValueError):
        HmacSigner("")


def test_eth_message_signer_signature_recovers_to_address():
    key = "0x" + "11" * 32
    signer = EthMessageSigner(key)
    msg = bootstrap_message(signer.address, 1_700_000_000_000)

    sig = signer.sign(msg)

    assert msg == f"paradex-auth:{signer.address}:1700000000000"
    assert sig.startswith("0x")
    assert Account.recover_message(encode_defunct(text=msg), signature=sig) == signer.address


def test_credential_from_jwt_reads_exp_claim():
    claims = base64.urlsafe_b64encode(json.dumps({"exp": 1_900_000_000}).encode()).decode().rstrip("=")
    cred = credential_from_jwt(f"hdr.{claims}.sig")
    assert cred.token == f"hdr.{claims}.sig"
    assert cred.expires_at_ms == 1_900_000_000_000


def test_credential_from_opaque_token_uses_default_ttl():
    before = now_ms()
    cred = credential_from_jwt("opaque", default_ttl_s=120)
    assert before + 119_000 <= cred.expires_at_ms <= now_ms() + 121_000


def _write_secrets(path, payload, mode=0o600):
    path.write_text(json.dumps(payload), encoding="utf-8")
    os.chmod(path, mode)
    return path


def test_load_secrets_reads_valid_file(tmp_path):
    p = _write_secrets(
        tmp_path / "secrets.json",
        {"api_key": "k", "api_secret": "s", "account_address": "0x" + "a" * 40, "private_key": "b" * 64},
    )
    secrets = load_secrets(str(p))
    assert secrets.api_key == "k"
    assert secrets.account_address == "0x" + "a" * 40
    assert secrets.private_key == "b" * 64


@pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
def test_load_secrets_rejects_group_readable_file(tmp_path):
    p = _write_secrets(
        tmp_path / "secrets.json",
        {"api_key": "k", "api_secret": "s", "account_address": "0x" + "a" * 40},
        mode=0o640,
    )
    with pytest.raises(ValueError, match="permissions too open"):
        load_secrets(str(p))


def test_load_secrets_rejects_bad_address(tmp_path):
    p = _write_secrets(tmp_path / "secrets.json", {"api_key": "k", "api_secret": "s", "account_address": "nope"})
    with pytest.raises(ValueError, match="account_address"):
        load_secrets(str(p))
