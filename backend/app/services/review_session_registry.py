from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from time import monotonic
from typing import Callable, Optional

from app.core.config import ReviewTimingConfig, app_config
from app.lib.realtime import ChannelFactoryBuilder, open_user_channels
from app.lib.rpc_gateway import RpcGateway
from app.schemas.session import UserSession
from app.services.collaborative_review import CollaborativeReviewSession
from app.services.draft_cache import LocalDraftCache
from app.services.idle_sweeper import IdleSweeper

logger = logging.getLogger("corpsreview.review_sessions")

_SAFE_DIR = re.compile(r"[^A-Za-z0-9_.-]")

GatewayFactory = Callable[[UserSession], RpcGateway]
SessionKey = tuple[str, str]


class ReviewSessionRegistry:
    """
    进程内的活跃评审会话表，key = (user_id, application_id)。

    中文注释:
    - 同一用户重复打开同一 application 复用同一个会话（避免重复订阅）；复用时换上最新请求的 token。
    - 只按 key 加锁：打开会话要走多次网络调用，不能让一个慢请求挡住其他用户。
    - release 即“卸载页面”：取消去抖定时器并释放 realtime 订阅；客户端直接离开时由空闲回收兜底。
    """

    def __init__(
        self,
        *,
        timing: Optional[ReviewTimingConfig] = None,
        gateway_factory: GatewayFactory = RpcGateway.for_session,
        channels: ChannelFactoryBuilder = open_user_channels,
        draft_root: Optional[str] = None,
        clock: Callable[[], float] = monotonic,
    ):
        self.timing = timing or ReviewTimingConfig.from_env()
        self._gateway_factory = gateway_factory
        self._channels = channels
        self._clock = clock
        self.draft_root = Path(draft_root or self.timing.draft_cache_dir)
        self._sessions: dict[SessionKey, CollaborativeReviewSession] = {}
        self._tokens: dict[SessionKey, str] = {}
        self._last_seen: dict[SessionKey, float] = {}
        self._key_locks: dict[SessionKey, asyncio.Lock] = {}
        self._sweeper = IdleSweeper(self.sweep_idle, interval_sec=self.timing.session_sweep_sec, name="ReviewSessions")

    def draft_cache_for(self, session: UserSession) -> LocalDraftCache:
        # 本地草稿按用户隔离（对应浏览器各自的 localStorage）
        return LocalDraftCache(self.draft_root / _SAFE_DIR.sub("_", session.user_id))

    def __len__(self) -> int:
        return len(self._sessions)

    def _lock_for(self, key: SessionKey) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = self._key_locks[key] = asyncio.Lock()
        return lock

    def get(self, session: UserSession, application_id: str) -> Optional[CollaborativeReviewSession]:
        return self._sessions.get((session.user_id, str(application_id)))

    async def _rebind(self, key: SessionKey, review: CollaborativeReviewSession, session: UserSession) -> None:
        if self._tokens.get(key) == session.access_token:
            return
        await review.rebind(self._gateway_factory(session), session.access_token)
        self._tokens[key] = session.access_token

    async def acquire(self, session: UserSession, application_id: str) -> CollaborativeReviewSession:
        key = (session.user_id, str(application_id))
        async with self._lock_for(key):
            existing = self._sessions.get(key)
            if existing is not None and not existing.closed:
                await self._rebind(key, existing, session)
                self._last_seen[key] = self._clock()
                return existing

            review = CollaborativeReviewSession(
                application_id=application_id,
                gateway=self._gateway_factory(session),
                draft_cache=self.draft_cache_for(session),
                timing=self.timing,
                channel_factory=await self._channels(session),
                origin_id=session.origin_id,
                verbose=app_config.is_development,
            )
            try:
                await review.open()
            except Exception:
                await review.close()
                raise
            self._sessions[key] = review
            self._tokens[key] = session.access_token
            self._last_seen[key] = self._clock()
        self._sweeper.start()
        return review

    def _forget(self, key: SessionKey) -> Optional[CollaborativeReviewSession]:
        self._tokens.pop(key, None)
        self._last_seen.pop(key, None)
        return self._sessions.pop(key, None)

    async def release(self, session: UserSession, application_id: str) -> bool:
        key = (session.user_id, str(application_id))
        async with self._lock_for(key):
            review = self._forget(key)
            if review is None:
                return False
            await review.close()
        return True

    async def sweep_idle(self) -> int:
        """
        关闭超过 session_idle_sec 未被访问的会话；仍有未保存编辑的先尽力保存一次。
        """
        cutoff = self._clock() - self.timing.session_idle_sec
        stale = [key for key, seen in self._last_seen.items() if seen <= cutoff]
        closed = 0
        for key in stale:
            async with self._lock_for(key):
                # 等锁期间可能又被访问过
                if self._last_seen.get(key, cutoff + 1) > cutoff:
                    continue
                review = self._forget(key)
                if review is None:
                    continue
                if review.has_unsaved_changes:
                    await review.save_draft()
                await review.close()
                closed += 1
        return closed

    async def close_all(self) -> None:
        await self._sweeper.stop()
        reviews = list(self._sessions.values())
        self._sessions.clear()
        self._tokens.clear()
        self._last_seen.clear()
        self._key_locks.clear()
        for review in reviews:
            await review.close()
        if reviews:
            logger.info("[ReviewSessions] closed %d session(s)", len(reviews))
