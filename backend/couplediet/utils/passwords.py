from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets


_SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _pbkdf2_sha256(secret: str, *, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac(
        "sha256",
        secret.encode("utf-8"),
        salt,
        iterations,
    )


def hash_password(
    password: str,
    *,
    iterations: int = 210_000,
    salt_bytes: int = 16,
) -> str:
    """生成 PBKDF2-SHA256 hash 字符串（存入 users.password_hash）。

    格式：pbkdf2_sha256$<iterations>$<salt_b64>$<hash_b64>
    """
    if not password:
        raise ValueError("password 不能为空")
    if iterations <= 0:
        raise ValueError("iterations 必须 > 0")
    if salt_bytes <= 0:
        raise ValueError("salt_bytes 必须 > 0")

    salt = secrets.token_bytes(salt_bytes)
    dk = _pbkdf2_sha256(password, salt=salt, iterations=iterations)
    salt_b64 = base64.b64encode(salt).decode("utf-8")
    hash_b64 = base64.b64encode(dk).decode("utf-8")
    return f"pbkdf2_sha256${iterations}${salt_b64}${hash_b64}"


def verify_password(password: str, stored: str) -> bool:
    """校验 PBKDF2-SHA256 hash（常量时间比较）。"""
    if not password or not stored:
        return False

    try:
        scheme, iterations_raw, salt_b64, hash_b64 = stored.split("$", 3)
        if scheme != "pbkdf2_sha256":
            return False

        iterations = int(iterations_raw)
        if iterations <= 0:
            return False

        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(hash_b64)
        actual = _pbkdf2_sha256(password, salt=salt, iterations=iterations)
        return hmac.compare_digest(actual, expected)
    except Exception:
        return False


def password_problem(password: str) -> str | None:
    """返回密码强度不足的原因；满足要求时返回 None。"""
    if not password or len(password) < 8:
        return "密码至少需要 8 个字符"
    if not re.search(r"[A-Z]", password):
        return "密码需要包含大写字母"
    if not re.search(r"[a-z]", password):
        return "密码需要包含小写字母"
    if not re.search(r"[0-9]", password):
        return "密码需要包含数字"
    if not _SPECIAL_RE.search(password):
        return "密码需要包含特殊字符"
    return None


def is_valid_email(email: str) -> bool:
    return bool(email) and bool(_EMAIL_RE.match(email.strip()))
