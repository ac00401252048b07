from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from time import monotonic
from typing import Any, Awaitable, Callable, Iterable, Optional

from pydantic import ValidationError

from app.core.config import app_config
from app.lib.realtime import ChannelFactory, ChannelFactoryBuilder, open_user_channels
from app.lib.rpc_gateway import RpcError, RpcGateway
from app.schemas.review import (
    NO_REVIEWER_LABEL,
    ApplicantQueueItem,
    QueueRow,
    ReviewChangeEvent,
    ReviewerListItem,
)
from app.schemas.session import UserSession
from app.services.autosave import DebouncedTimer
from app.services.idle_sweeper import IdleSweeper
from app.services.realtime_listener import ListenerState, RealtimeChangeListener

logger = logging.getLogger("corpsreview.queue")

NOT_ASSIGNED_LABEL = "Not assigned"
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

FeedKey = tuple[str, str]


def _aware(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return _EPOCH
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def list_inbox(gateway: RpcGateway, program_id: str, status_filter: Optional[str] = None) -> list[ReviewerListItem]:
    """
    Reviewer 收件箱：按提交先后（created_at 升序）处理。
    """
    items: list[ReviewerListItem] = []
    for row in gateway.list_reviewer_applications(program_id, status_filter):
        try:
            items.append(ReviewerListItem.model_validate(row))
        except ValidationError as e:
            logger.warning("[Queue] skipping malformed inbox row: %s", e.errors()[0].get("msg"))
    items.sort(key=lambda it: _aware(it.created_at))
    return items


def list_applicants(
    gateway: RpcGateway,
    program_id: str,
    status_filter: Optional[str] = "submitted",
) -> list[ApplicantQueueItem]:
    items: list[ApplicantQueueItem] = []
    for row in gateway.list_review_queue(program_id, status_filter):
        try:
            items.append(ApplicantQueueItem.model_validate(row))
        except ValidationError as e:
            logger.warning("[Queue] skipping malformed applicant row: %s", e.errors()[0].get("msg"))
    items.sort(key=lambda it: _aware(it.submitted_at or it.created_at))
    return items


def _not_started_row(app: dict[str, Any]) -> QueueRow:
    program = app.get("programs") or {}
    org = program.get("organizations") or {}
    return QueueRow(
        review_id=f"not_started_{app.get('id')}",
        application_id=app.get("id"),
        status="not_started",
        updated_at=app.get("updated_at"),
        submitted_at=app.get("created_at"),
        reviewer_name=NOT_ASSIGNED_LABEL,
        applicant_id=app.get("user_id"),
        program_id=app.get("program_id"),
        program_name=program.get("name") or "Unknown Program",
        org_id=program.get("organization_id") or "",
        org_name=org.get("name") or "Unknown Organization",
    )


def list_combined_queue(gateway: RpcGateway, program_id: str) -> list[QueueRow]:
    """
    Program 评审总览：已有评审行 + 已提交但还没人开始评审的申请（not_started）。

    中文注释: 两个来源任一失败都直接抛出 RpcError，不返回“半张表”。
    """
    rows: list[QueueRow] = []
    for raw in gateway.list_program_reviews(program_id):
        try:
            row = QueueRow.model_validate(raw)
        except ValidationError as e:
            logger.warning("[Queue] skipping malformed review row: %s", e.errors()[0].get("msg"))
            continue
        if not (row.reviewer_name or "").strip():
            row.reviewer_name = NO_REVIEWER_LABEL
        rows.append(row)

    reviewed = {str(r.application_id) for r in rows}
    for app in gateway.list_submitted_applications(program_id):
        if str(app.get("id")) in reviewed:
            continue
        try:
            rows.append(_not_started_row(app))
        except ValidationError as e:
            logger.warning("[Queue] skipping malformed application row: %s", e.errors()[0].get("msg"))

    rows.sort(key=lambda r: _aware(r.updated_at or r.submitted_at), reverse=True)
    return rows


class QueueWatcher:
    """
    监听某个 program 下 applications 与 application_reviews 的变更，去抖后重新拉取队列。

    中文注释:
    - 总览的每一行都来自评审行（状态 / 分数 / 评审人），只听 applications 会让已打开的总览一直显示旧分数。
    - application_reviews 没有 program_id，tracked() 给出当前队列里的 application，其余事件丢弃。
    """

    def __init__(
        self,
        factory: ChannelFactory,
        program_id: str,
        reload: Callable[[], Awaitable[None]],
        *,
        tracked: Callable[[], Iterable[str]],
        debounce_sec: float = 0.1,
        verbose: bool = False,
    ):
        self._timer = DebouncedTimer(debounce_sec, reload, name="queue-reload")
        self._tracked = tracked
        self.applications = RealtimeChangeListener.for_program(factory, program_id, self._on_change, verbose=verbose)
        self.reviews = RealtimeChangeListener.for_program_reviews(
            factory,
            program_id,
            self._on_change,
            accept=self._is_tracked,
            verbose=verbose,
        )

    @property
    def listeners(self) -> tuple[RealtimeChangeListener, RealtimeChangeListener]:
        return self.applications, self.reviews

    @property
    def subscribed(self) -> bool:
        return all(listener.state == ListenerState.SUBSCRIBED for listener in self.listeners)

    def _is_tracked(self, event: ReviewChangeEvent) -> bool:
        application_id = event.field("application_id")
        return application_id is not None and str(application_id) in set(self._tracked())

    def _on_change(self, event: ReviewChangeEvent) -> None:
        self._timer.trigger()

    async def start(self) -> None:
        for listener in self.listeners:
            await listener.subscribe()

    async def refresh_auth(self, access_token: str) -> None:
        # 两个 channel 共用同一个 realtime client，同步一次即可
        await self.applications.refresh_auth(access_token)

    async def stop(self) -> None:
        self._timer.cancel()
        for listener in self.listeners:
            await listener.release()

    async def wait_idle(self) -> None:
        await self._timer.wait_idle()


class QueueFeed:
    """
    某用户视角下某 program 的评审总览；有 realtime 时由 QueueWatcher 保持新鲜，否则每次读取都重新拉取。
    """

    def __init__(self, gateway: RpcGateway, program_id: str):
        self.gateway = gateway
        self.program_id = str(program_id)
        self.rows: list[QueueRow] = []
        self.loaded = False
        self.watcher: Optional[QueueWatcher] = None

    async def refresh(self) -> None:
        self.rows = await asyncio.to_thread(list_combined_queue, self.gateway, self.program_id)
        self.loaded = True

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except RpcError as e:
            logger.warning("[Queue] realtime refresh failed (program_id=%s): %s", self.program_id, e.message)

    def tracked_applications(self) -> list[str]:
        return [str(row.application_id) for row in self.rows]

    async def watch(self, factory: ChannelFactory, *, debounce_sec: float, verbose: bool = False) -> None:
        if self.watcher is not None:
            return
        self.watcher = QueueWatcher(
            factory,
            self.program_id,
            self._refresh_quietly,
            tracked=self.tracked_applications,
            debounce_sec=debounce_sec,
            verbose=verbose,
        )
        await self.watcher.start()

    @property
    def live(self) -> bool:
        return self.watcher is not None and self.watcher.subscribed

    async def read(self) -> list[QueueRow]:
        if not self.loaded or not self.live:
            await self.refresh()
        return self.rows

    async def close(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()
            self.watcher = None


class QueueFeedRegistry:
    """
    key = (user_id, program_id)；同一用户同一 program 只保留一个 realtime 订阅。

    中文注释: 超过 idle_sec 没被读取的 feed 由后台 IdleSweeper 关闭并释放订阅。
    """

    def __init__(
        self,
        *,
        channels: ChannelFactoryBuilder = open_user_channels,
        debounce_sec: float = 0.1,
        idle_sec: float = 1800.0,
        sweep_sec: float = 60.0,
        clock: Callable[[], float] = monotonic,
    ):
        self._channels = channels
        self.debounce_sec = debounce_sec
        self.idle_sec = idle_sec
        self._clock = clock
        self._feeds: dict[FeedKey, QueueFeed] = {}
        self._tokens: dict[FeedKey, str] = {}
        self._last_seen: dict[FeedKey, float] = {}
        self._sweeper = IdleSweeper(self.sweep_idle, interval_sec=sweep_sec, name="QueueFeeds")

    async def feed_for(self, session: UserSession, program_id: str, gateway: RpcGateway) -> QueueFeed:
        key = (session.user_id, str(program_id))
        self._last_seen[key] = self._clock()
        feed = self._feeds.get(key)
        if feed is not None:
            # 使用最新请求的网关（token 会刷新）
            feed.gateway = gateway
            if feed.watcher is not None and self._tokens.get(key) != session.access_token:
                await feed.watcher.refresh_auth(session.access_token)
            self._tokens[key] = session.access_token
            return feed
        feed = QueueFeed(gateway, program_id)
        self._feeds[key] = feed
        self._tokens[key] = session.access_token
        factory = await self._channels(session)
        if factory is not None:
            await feed.watch(factory, debounce_sec=self.debounce_sec, verbose=app_config.is_development)
        self._sweeper.start()
        return feed

    async def sweep_idle(self) -> int:
        cutoff = self._clock() - self.idle_sec
        stale = [key for key, seen in self._last_seen.items() if seen <= cutoff]
        closed = 0
        for key in stale:
            # 前一个 feed 关闭期间可能又被读取过
            if self._last_seen.get(key, cutoff + 1) > cutoff:
                continue
            feed = self._feeds.pop(key, None)
            self._tokens.pop(key, None)
            self._last_seen.pop(key, None)
            if feed is not None:
                logger.info("[Queue] closing idle feed user_id=%s program_id=%s", *key)
                await feed.close()
                closed += 1
        return closed

    async def close_all(self) -> None:
        await self._sweeper.stop()
        feeds = list(self._feeds.values())
        self._feeds.clear()
        self._tokens.clear()
        self._last_seen.clear()
        for feed in feeds:
            await feed.close()
