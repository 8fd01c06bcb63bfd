from __future__ import annotations

import re
from typing import Any


_CONTROL_RE = re.compile(r"[\r\n\t]+")


def _sanitize_text(text: str, *, max_len: int) -> str:
    """把异常文本压缩成更适合日志/落盘的短字符串（避免换行、控制字符、超长）。"""
    if max_len <= 0:
        return ""
    cleaned = _CONTROL_RE.sub(" ", text).strip()
    if len(cleaned) > max_len:
        return f"{cleaned[:max_len]}…"
    return cleaned


def exception_summary(exc: BaseException, *, max_len: int = 200) -> str:
    """生成对外更安全的异常摘要：默认仅保留异常类型 + 截断后的消息。"""
    name = type(exc).__name__
    msg = _sanitize_text(str(exc), max_len=max_len)
    return f"{name}: {msg}" if msg else name


class PairingError(Exception):
    """配对流程的业务失败（已归类），由 main.py 的 exception handler 统一转成 JSON。

    - code：稳定的失败码，前端据此分支
    - status_code：对应的 HTTP 状态码
    - extra：附加字段（例如 AlreadyPaired 的 party、DuplicatePending 的 direction）
    """

    code = "PAIRING_ERROR"
    status_code = 400
    default_message = "配对操作失败"

    def __init__(self, message: str | None = None, **extra: Any):
        self.message = message or self.default_message
        self.extra = {k: v for k, v in extra.items() if v is not None}
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.code, "message": self.message}
        payload.update(self.extra)
        return payload


class Unauthenticated(PairingError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "缺少或无效的登录凭证"


class NotFound(PairingError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "目标不存在"


class SelfPairing(PairingError):
    code = "SELF_PAIRING"
    status_code = 400
    default_message = "不能向自己发送配对请求"


class AlreadyPaired(PairingError):
    code = "ALREADY_PAIRED"
    status_code = 409
    default_message = "已存在配对关系"


class DuplicatePending(PairingError):
    code = "DUPLICATE_PENDING"
    status_code = 409
    default_message = "已存在等待处理的配对请求"


class NotPending(PairingError):
    code = "NOT_PENDING"
    status_code = 409
    default_message = "该配对请求已被处理"


class Forbidden(PairingError):
    code = "FORBIDDEN"
    status_code = 403
    default_message = "无权执行该操作"


class NoActiveRelationship(PairingError):
    code = "NO_ACTIVE_RELATIONSHIP"
    status_code = 400
    default_message = "当前没有已生效的配对关系"


class PartialDisconnect(PairingError):
    code = "PARTIAL_DISCONNECT"
    status_code = 500
    default_message = "配对已解除，但部分用户数据未清理完成，已记录待修复"


class Transient(PairingError):
    code = "TRANSIENT"
    status_code = 503
    default_message = "存储暂时不可用，请先刷新配对状态再决定是否重试"

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        # 超时后结果未知：提示调用方先查状态，而不是盲目重放写操作
        payload.setdefault("retry_hint", "refetch_status")
        return payload


class InvalidDecision(PairingError):
    code = "INVALID_DECISION"
    status_code = 422
    default_message = "只能接受（accept）或拒绝（reject）配对请求"
