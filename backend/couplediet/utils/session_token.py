from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any


TOKEN_VERSION = 1


@dataclass(frozen=True)
class UserIdentity:
    """Bearer token 校验通过后得到的调用方身份。"""

    user_id: int
    expires_at: int


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(payload_b64url: str, secret: str) -> str:
    sig = hmac.new(
        secret.encode("utf-8"),
        payload_b64url.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(sig)


def issue_token(*, user_id: int, secret: str, days: int, now: int | None = None) -> tuple[str, int]:
    """签发登录 token，返回 (token, exp 时间戳)。

    格式：<payload_b64url>.<hmac_sha256_b64url>，payload 为 {"v","sub","iat","exp"}。
    """
    if not secret:
        raise ValueError("secret 不能为空")

    now_int = int(now if now is not None else time.time())
    days = int(days or 0)
    if days <= 0:
        days = 30

    exp = now_int + days * 24 * 60 * 60
    payload = {
        "v": TOKEN_VERSION,
        "sub": int(user_id),
        "iat": now_int,
        "exp": exp,
    }
    payload_raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    payload_b64 = _b64url_encode(payload_raw)
    sig_b64 = _sign(payload_b64, secret)
    return f"{payload_b64}.{sig_b64}", exp


def verify_token(
    token: str | None,
    *,
    secret: str,
    now: int | None = None,
) -> tuple[UserIdentity | None, str]:
    """校验 token，返回 (identity, reason)；失败时 identity 为 None，reason 说明原因。"""
    if not token:
        return None, "missing"

    token = token.strip()
    if not token:
        return None, "missing"

    parts = token.split(".")
    if len(parts) != 2:
        return None, "format"

    payload_b64, sig_b64 = parts
    expected_sig = _sign(payload_b64, secret)
    if not hmac.compare_digest(expected_sig, sig_b64):
        return None, "bad_sig"

    try:
        payload_raw = _b64url_decode(payload_b64)
        payload: Any = json.loads(payload_raw.decode("utf-8"))
        if not isinstance(payload, dict):
            return None, "bad_payload"
    except Exception:
        return None, "bad_payload"

    if payload.get("v") != TOKEN_VERSION:
        return None, "bad_version"

    try:
        exp_int = int(payload.get("exp"))
        user_id = int(payload.get("sub"))
    except Exception:
        return None, "bad_claims"

    now_int = int(now if now is not None else time.time())
    if exp_int < now_int:
        return None, "expired"

    if user_id <= 0:
        return None, "bad_claims"

    return UserIdentity(user_id=user_id, expires_at=exp_int), "ok"


def extract_bearer_token(authorization: str | None) -> str | None:
    """从 Authorization 头里取出 Bearer token（大小写不敏感）。"""
    if not authorization or not isinstance(authorization, str):
        return None
    parts = authorization.strip().split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1] or None
