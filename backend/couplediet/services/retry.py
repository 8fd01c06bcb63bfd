"""存储写操作的有限重试（退避）

目标：
- 解除配对时，关系状态已先行写入（fencing），之后清理双方 partner_id 的写入若遇到
  瞬时故障，需要有限重试，尽量不留下“单边悬挂”的 partner_id。
- 只重试存储层的不可用异常（StoreUnavailable）；业务性冲突（StoreConflict）不重试，
  交给调用方处理。

实现原则：
- 指数退避 + 少量抖动（jitter），避免并发请求在同一时刻集体重试。
- 最终失败时在异常对象上附加尝试次数，便于上层日志输出。
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from .couple_store import StoreUnavailable

T = TypeVar("T")


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except Exception:
        return default


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def compute_backoff_seconds(
    *,
    attempt: int,
    base: float,
    max_backoff: float,
    jitter_ratio: float,
) -> float:
    if base <= 0:
        return 0.0

    exp = max(0, int(attempt) - 1)
    delay = base * (2**exp)
    if max_backoff > 0:
        delay = min(delay, max_backoff)

    if jitter_ratio > 0:
        jitter = delay * jitter_ratio
        delay += random.random() * jitter

    return max(0.0, float(delay))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    backoff_seconds: float,
    max_backoff_seconds: float = 5.0,
    jitter_ratio: float = 0.1,
) -> T:
    """对 StoreUnavailable 做有限重试，成功返回结果，失败抛出最后一次异常。"""
    attempts = max(1, _to_int(max_attempts, 1))
    base = max(0.0, _to_float(backoff_seconds, 0.0))
    max_backoff = max(0.0, _to_float(max_backoff_seconds, 0.0))
    jitter = max(0.0, _to_float(jitter_ratio, 0.0))

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except StoreUnavailable as e:
            if attempt >= attempts:
                e.attempts = attempt
                raise

            sleep_s = compute_backoff_seconds(
                attempt=attempt,
                base=base,
                max_backoff=max_backoff,
                jitter_ratio=jitter,
            )
            if sleep_s > 0:
                await asyncio.sleep(sleep_s)

    raise StoreUnavailable("retry loop exited without result")
