"""取消句柄：线程安全的取消标记，可附带单调时钟截止时间。"""

from __future__ import annotations

import threading
import time
from typing import Optional

from app.packages.trove.core.exceptions import OperationCancelled


class CancelToken:
    """供上传、存储与后台任务共享的取消/超时句柄。

    ``check()`` 在已取消或超过截止时间时抛出 ``OperationCancelled``；
    阻塞循环应在每个缓冲块之间调用一次。
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self.cancelled:
            return "deadline exceeded"
        return None

    def remaining(self) -> Optional[float]:
        """距离截止时间的剩余秒数，未设置截止时间时返回 ``None``。"""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def wait(self, seconds: float) -> bool:
        """最多等待 ``seconds`` 秒，期间被取消则提前返回 ``True``。"""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        return self._event.wait(seconds) or self.cancelled

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelled(f"操作已取消：{self.reason}")


def check(ctx: Optional[CancelToken]) -> None:
    """``ctx`` 可为空的便捷检查。"""
    if ctx is not None:
        ctx.check()
