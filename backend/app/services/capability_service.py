from __future__ import annotations

import asyncio
import logging
from time import monotonic
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from app.lib.rpc_gateway import RpcError, RpcGateway
from app.schemas.capabilities import Capabilities, CoalitionMini, OrgMini, ProgramMini
from app.schemas.session import UserSession

logger = logging.getLogger("corpsreview.capabilities")

M = TypeVar("M", bound=BaseModel)


def _rows(label: str, fetch: Callable[[], list[dict[str, Any]]]) -> list[dict[str, Any]]:
    try:
        return fetch()
    except RpcError as e:
        # 中文注释: 单个能力 RPC 失败按“无此能力”处理，不阻断其余能力的计算
        logger.warning("[Capabilities] %s failed, treating as empty: %s", label, e.message)
        return []


def _parse(model: type[M], rows: list[dict[str, Any]]) -> list[M]:
    out: list[M] = []
    for row in rows:
        try:
            out.append(model.model_validate(row))
        except ValidationError as e:
            logger.warning("[Capabilities] skipping malformed %s row: %s", model.__name__, e.errors()[0].get("msg"))
    return out


def compute_capabilities(gateway: RpcGateway, session: UserSession) -> Capabilities:
    """
    计算当前用户的能力集合（阻塞调用，放在线程里跑）。

    - 已软删除的 profile：没有任何能力
    - reviewer_programs 过滤掉已软删除的 program
    """
    try:
        profile = gateway.get_user_role(session.user_id) or {}
    except RpcError as e:
        logger.warning("[Capabilities] profile lookup failed (user_id=%s): %s", session.user_id, e.message)
        profile = {}
    if profile.get("deleted_at"):
        logger.info("[Capabilities] profile soft-deleted, no capabilities (user_id=%s)", session.user_id)
        return Capabilities()

    admin_orgs = _parse(OrgMini, _rows("my_admin_orgs_v1", gateway.my_admin_orgs))
    programs = _parse(ProgramMini, _rows("my_reviewer_programs_v2", gateway.my_reviewer_programs))
    coalitions = _parse(CoalitionMini, _rows("my_coalitions_v1", gateway.my_coalitions))

    if programs:
        try:
            live = gateway.filter_live_programs(p.id for p in programs)
            programs = [p for p in programs if p.id in live]
        except RpcError as e:
            logger.warning("[Capabilities] deleted-program filter failed, keeping all: %s", e.message)

    role = str(profile.get("role") or "").strip() or None
    return Capabilities(
        admin_orgs=admin_orgs,
        reviewer_programs=programs,
        coalitions=coalitions,
        user_role=role,
    )


class CapabilityLoader:
    """
    带去抖的能力加载：同一用户在 dedupe 窗口内的并发/连续调用共享同一次计算结果。
    """

    def __init__(self, *, dedupe_sec: float = 5.0):
        self.dedupe_sec = max(0.0, float(dedupe_sec))
        self._inflight: dict[str, tuple[float, asyncio.Future[Capabilities]]] = {}

    async def load(self, gateway: RpcGateway, session: UserSession) -> Capabilities:
        now = monotonic()
        hit = self._inflight.get(session.user_id)
        if hit is not None and now - hit[0] < self.dedupe_sec:
            return await asyncio.shield(hit[1])

        fut = asyncio.ensure_future(asyncio.to_thread(compute_capabilities, gateway, session))
        if self.dedupe_sec > 0:
            self._inflight[session.user_id] = (now, fut)
        try:
            return await asyncio.shield(fut)
        except Exception:
            # 失败结果不参与去抖
            self._inflight.pop(session.user_id, None)
            raise

    def invalidate(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._inflight.clear()
        else:
            self._inflight.pop(user_id, None)


class CapabilityPoller:
    """
    定期 / 按事件重新计算能力（导航菜单用）。

    触发时机：
    - 每 interval_sec 秒
    - 路由切换到 /dashboard
    - 页面重新可见
    """

    DASHBOARD_PATH = "/dashboard"

    def __init__(
        self,
        loader: Callable[[], Awaitable[Capabilities]],
        *,
        interval_sec: float = 30.0,
        on_change: Optional[Callable[[Capabilities], None]] = None,
    ):
        self._loader = loader
        self.interval_sec = max(0.01, float(interval_sec))
        self._on_change = on_change
        self.capabilities: Optional[Capabilities] = None
        self.refresh_count = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> Optional[Capabilities]:
        try:
            caps = await self._loader()
        except Exception as e:
            logger.warning("[Capabilities] refresh failed, keeping previous result: %s", e)
            return self.capabilities
        self.refresh_count += 1
        changed = caps != self.capabilities
        self.capabilities = caps
        if changed and self._on_change is not None:
            self._on_change(caps)
        return caps

    async def route_changed(self, path: str) -> None:
        if (path or "").rstrip("/") == self.DASHBOARD_PATH:
            await self.refresh()

    async def visibility_changed(self, *, visible: bool) -> None:
        if visible:
            await self.refresh()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.interval_sec)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class CapabilityPollerRegistry:
    """
    每个用户一个 CapabilityPoller；轮询用的是该用户最近一次请求带来的会话（token 会刷新）。
    """

    def __init__(
        self,
        loader: CapabilityLoader,
        *,
        interval_sec: float = 30.0,
        gateway_factory: Callable[[UserSession], RpcGateway] = RpcGateway.for_session,
    ):
        self._loader = loader
        self.interval_sec = interval_sec
        self._gateway_factory = gateway_factory
        self._pollers: dict[str, CapabilityPoller] = {}
        self._sessions: dict[str, UserSession] = {}

    def for_session(self, session: UserSession) -> CapabilityPoller:
        self._sessions[session.user_id] = session
        poller = self._pollers.get(session.user_id)
        if poller is None:
            user_id = session.user_id

            async def _load() -> Capabilities:
                latest = self._sessions[user_id]
                return await self._loader.load(self._gateway_factory(latest), latest)

            poller = CapabilityPoller(_load, interval_sec=self.interval_sec)
            self._pollers[user_id] = poller
        return poller

    async def invalidate(self, session: UserSession) -> Optional[Capabilities]:
        """丢弃去抖缓存后立即重算（成员关系刚变更时用，不等下一轮轮询）"""
        self._loader.invalidate(session.user_id)
        return await self.for_session(session).refresh()

    async def close_all(self) -> None:
        pollers = list(self._pollers.values())
        self._pollers.clear()
        self._sessions.clear()
        for poller in pollers:
            await poller.stop()
