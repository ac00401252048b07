from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("corpsreview.sweeper")


class IdleSweeper:
    """
    后台周期任务：每 interval_sec 秒调用一次 sweep()，回收长时间无人访问的会话 / 订阅。

    中文注释:
    - 客户端关闭页面或崩溃时不会调用 DELETE，进程内的会话只能靠这里释放。
    - sweep 失败只记日志，下一轮继续。
    """

    def __init__(self, sweep: Callable[[], Awaitable[int]], *, interval_sec: float, name: str = "sweeper"):
        self._sweep = sweep
        self.interval_sec = max(0.01, float(interval_sec))
        self._name = name
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_sec)
            try:
                closed = await self._sweep()
            except Exception:
                logger.exception("[%s] sweep failed", self._name)
                continue
            if closed:
                logger.info("[%s] released %d idle entr%s", self._name, closed, "y" if closed == 1 else "ies")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
