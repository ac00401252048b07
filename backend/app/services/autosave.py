from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("corpsreview.autosave")


class DebouncedTimer:
    """
    去抖定时器：静默期结束后执行一次回调。

    - trigger(): 取消已挂起的定时器并重新计时（同一实例最多一个挂起定时器，不排队）
    - cancel(): 丢弃挂起的定时器（会话关闭时调用）
    - wait_idle(): 等待已触发的回调跑完（会话关闭前调用）
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]], *, name: str = "debounce"):
        self._delay = max(0.0, float(delay))
        self._callback = callback
        self._name = name
        self._handle: Optional[asyncio.TimerHandle] = None
        self._running: set[asyncio.Task[None]] = set()

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def trigger(self) -> None:
        loop = asyncio.get_running_loop()
        self.cancel()
        self._handle = loop.call_later(self._delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.ensure_future(self._run())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self) -> None:
        try:
            await self._callback()
        except Exception:
            # 回调自身负责记录业务错误；这里只兜底，避免 task 异常无人读取
            logger.exception("[%s] debounced callback failed", self._name)

    async def wait_idle(self) -> None:
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
