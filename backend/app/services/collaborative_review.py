from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from pydantic import ValidationError

from app.core.config import ReviewTimingConfig
from app.lib.realtime import ChannelFactory
from app.lib.rpc_gateway import RpcError, RpcGateway
from app.schemas.application import ApplicationSchema
from app.schemas.review import (
    DECISION_KEY,
    LabelledAnswer,
    MalformedPayloadError,
    ProgramReviewForm,
    Ratings,
    ReviewBundle,
    ReviewChangeEvent,
    ReviewRow,
    ReviewState,
    ReviewView,
    SaveStatus,
    parse_ratings,
)
from app.services.application_service import label_answers
from app.services.autosave import DebouncedTimer
from app.services.draft_cache import LocalDraftCache
from app.services.realtime_listener import RealtimeChangeListener
from app.services.review_reconciler import (
    default_state,
    last_edited_banner,
    reconcile,
    resolve_reviewer_name,
)
from app.services.submission_gate import ReviewLockedError, SubmissionGate

logger = logging.getLogger("corpsreview.review_session")

RATINGS_JSON_ERROR = "Ratings must be valid JSON."


def _stamp(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        text = str(raw).strip()
        if not text:
            return None
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


class CollaborativeReviewSession:
    """
    一个 reviewer 打开一个 application 的协作评审会话。

    控制流：
    open -> 拉取 bundle（答案 + schema + 共享评审行）-> 合并为内存态 -> 订阅 realtime
    编辑 -> 同步写本地草稿 -> 去抖后 upsert（草稿）
    他人保存 -> realtime 事件 -> 短去抖后重新拉取并合并
    submit -> upsert(status="submitted") -> 只读，直到显式 unlock

    中文注释:
    1) 服务端 upsert 是整行 last-write-wins，没有版本号；这里不做字段级合并。
    2) close 之后到达的任何网络结果都是 no-op（_closed 守卫）。
    3) 自己保存引起的 realtime 回声：记录自己保存返回的 updated_at；去抖结束时若最后一个事件是自己的 stamp，则跳过重载。
    """

    def __init__(
        self,
        *,
        application_id: UUID | str,
        gateway: RpcGateway,
        draft_cache: LocalDraftCache,
        timing: ReviewTimingConfig,
        channel_factory: Optional[ChannelFactory] = None,
        origin_id: str = "",
        verbose: bool = False,
    ):
        self.application_id = str(UUID(str(application_id)))
        self.gateway = gateway
        self.draft_cache = draft_cache
        self.origin_id = origin_id

        self.state: ReviewState = default_state(self.application_id)
        self.gate = SubmissionGate()
        self.answers: dict[str, Any] = {}
        self.schema = ApplicationSchema()
        self.program_id: Optional[str] = None
        self.review_form: Optional[ProgramReviewForm] = None

        self.loading = True
        self.save_status: SaveStatus = "idle"
        self.error: Optional[str] = None

        self._dirty = False
        self._closed = False
        self._opened = False
        self._own_stamps: deque[str] = deque(maxlen=32)
        self._save_lock = asyncio.Lock()
        self._save_timer = DebouncedTimer(timing.autosave_debounce_sec, self._autosave, name="review-autosave")
        self._reload_timer = DebouncedTimer(timing.realtime_debounce_sec, self._realtime_reload, name="review-realtime-reload")
        self._remote_stamp: Optional[str] = None
        self._listener: Optional[RealtimeChangeListener] = None
        if channel_factory is not None:
            self._listener = RealtimeChangeListener.for_application(
                channel_factory,
                self.application_id,
                self._on_remote_change,
                verbose=verbose,
            )

    # ---------- 生命周期 ----------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listener(self) -> Optional[RealtimeChangeListener]:
        return self._listener

    async def open(self) -> "CollaborativeReviewSession":
        if self._opened:
            return self
        self._opened = True
        await self.load(initial=True)
        await self._load_review_form()
        self._restore_local_draft()
        if self._listener is not None and not self._closed:
            await self._listener.subscribe()
        logger.info(
            "[ReviewSession] opened application_id=%s origin=%s status=%s",
            self.application_id,
            self.origin_id,
            self.state.status,
        )
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._save_timer.cancel()
        self._reload_timer.cancel()
        if self._listener is not None:
            await self._listener.release()

    async def rebind(self, gateway: RpcGateway, access_token: str) -> None:
        """客户端刷新了 JWT：后续 RPC 改用新 gateway，realtime 连接同步新 token。"""
        self.gateway = gateway
        if self._listener is not None:
            await self._listener.refresh_auth(access_token)

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Review session is closed")

    # ---------- 加载 ----------

    def _fetch_bundle_blocking(self) -> tuple[ReviewBundle, str]:
        raw = self.gateway.fetch_review_bundle(self.application_id)
        try:
            bundle = ReviewBundle.model_validate(raw or {"application_id": self.application_id})
        except ValidationError as e:
            raise MalformedPayloadError(f"Malformed review bundle: {e.errors()[0].get('msg')}") from e
        return self._complete_bundle(bundle)

    def _fetch_direct_blocking(self) -> tuple[ReviewBundle, str]:
        app_row = self.gateway.load_application(self.application_id)
        if not app_row:
            raise ValueError("Application not found")
        review_raw = self.gateway.load_review_row(self.application_id)
        try:
            bundle = ReviewBundle.model_validate(
                {
                    "application_id": self.application_id,
                    "program_id": app_row.get("program_id"),
                    "applicant_answers": app_row.get("answers"),
                    "review": review_raw,
                }
            )
        except ValidationError as e:
            raise MalformedPayloadError(f"Malformed review data: {e.errors()[0].get('msg')}") from e
        return self._complete_bundle(bundle)

    def _complete_bundle(self, bundle: ReviewBundle) -> tuple[ReviewBundle, str]:
        # 中文注释: RPC 没带 schema 时，从 programs_public 补拉；失败不影响评审本身。
        if not bundle.application_schema and bundle.program_id:
            try:
                bundle.application_schema = self.gateway.get_program_schema(str(bundle.program_id)) or {}
            except RpcError as e:
                logger.warning("[ReviewSession] schema fetch failed (program_id=%s): %s", bundle.program_id, e)
        name = resolve_reviewer_name(bundle.review, self.gateway.get_profile_name)
        return bundle, name

    async def load(self, *, initial: bool = False) -> None:
        if self._closed:
            return
        if initial:
            self.loading = True
        try:
            bundle, name = await asyncio.to_thread(self._fetch_bundle_blocking)
        except (RpcError, MalformedPayloadError) as e:
            logger.warning("[ReviewSession] review_get_v1 failed, falling back to direct queries: %s", e)
            try:
                bundle, name = await asyncio.to_thread(self._fetch_direct_blocking)
            except (RpcError, MalformedPayloadError, ValueError) as e2:
                if self._closed:
                    return
                self.loading = False
                self.error = getattr(e2, "message", None) or str(e2) or "Failed to load data"
                logger.error("[ReviewSession] load failed (application_id=%s): %s", self.application_id, self.error)
                if initial:
                    raise
                return

        if self._closed:
            return
        self._apply_bundle(bundle, name)

    def _apply_bundle(self, bundle: ReviewBundle, reviewer_name: str) -> None:
        self.answers = dict(bundle.applicant_answers)
        self.program_id = str(bundle.program_id) if bundle.program_id else self.program_id
        try:
            self.schema = ApplicationSchema.from_payload(bundle.application_schema)
        except MalformedPayloadError as e:
            logger.warning("[ReviewSession] ignoring malformed schema: %s", e)
            self.schema = ApplicationSchema()

        local = self.state
        merged = reconcile(self.application_id, bundle.review, local, reviewer_name=reviewer_name)
        self.gate.sync(merged.status)
        if self._dirty:
            if self.gate.is_read_only:
                # 服务端已被他人提交：本地未保存的编辑不再发送
                self._dirty = False
                self._save_timer.cancel()
            else:
                merged = self._with_local_edits(merged, local)
        self.state = merged
        self.loading = False
        if self.save_status != "error":
            self.error = None

    @staticmethod
    def _with_local_edits(base: ReviewState, local: ReviewState) -> ReviewState:
        return base.model_copy(
            update={"score": local.score, "comments": local.comments, "ratings": dict(local.ratings)}
        )

    async def _load_review_form(self) -> None:
        if not self.program_id or self._closed:
            return
        try:
            raw = await asyncio.to_thread(self.gateway.get_program_review_form, self.program_id)
            self.review_form = ProgramReviewForm.model_validate(raw) if raw else None
        except (RpcError, ValidationError) as e:
            logger.warning("[ReviewSession] review form unavailable (program_id=%s): %s", self.program_id, e)
            self.review_form = None

    def _restore_local_draft(self) -> None:
        draft = self.draft_cache.get(self.application_id)
        if draft is None or not draft.has_content():
            return
        if self.gate.is_read_only:
            self.draft_cache.remove(self.application_id)
            return
        server_at, draft_at = _stamp(self.state.updated_at), _stamp(draft.saved_at)
        if server_at and draft_at and server_at >= draft_at:
            # 服务端行比本地草稿新：草稿已过期
            self.draft_cache.remove(self.application_id)
            return
        self.state = self.state.model_copy(
            update={"score": draft.score, "comments": draft.comments, "ratings": dict(draft.ratings)}
        )
        self._dirty = True
        self._save_timer.trigger()
        logger.info("[ReviewSession] restored local draft application_id=%s", self.application_id)

    # ---------- 编辑 ----------

    def _edit(self, **changes: Any) -> None:
        self._ensure_open()
        self.gate.ensure_editable()
        self.state = self.state.model_copy(update=changes)
        self._dirty = True
        # 先同步写本地草稿，再（重新）开始去抖计时
        self.draft_cache.put(self.application_id, self.state)
        self._save_timer.trigger()

    def set_score(self, value: Optional[int]) -> None:
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValueError("score must be an integer or null")
        self._edit(score=value)

    def set_comments(self, value: Optional[str]) -> None:
        self._edit(comments=value or "")

    def set_ratings(self, ratings: Ratings | dict[str, Any]) -> None:
        self._edit(ratings=parse_ratings(ratings))

    def set_ratings_json(self, text: str) -> None:
        self._ensure_open()
        self.gate.ensure_editable()
        try:
            parsed = parse_ratings(text or "")
        except MalformedPayloadError:
            self.error = RATINGS_JSON_ERROR
            raise
        self.error = None
        self._edit(ratings=parsed)

    def set_decision(self, value: Optional[str]) -> None:
        decision = (value or "").strip() or None
        form = self.review_form
        if decision and form and form.show_decision and form.decision_options:
            if decision not in form.decision_options:
                raise ValueError(f"Decision must be one of: {', '.join(form.decision_options)}")
        ratings = dict(self.state.ratings)
        if decision is None:
            ratings.pop(DECISION_KEY, None)
        else:
            ratings[DECISION_KEY] = decision
        self._edit(ratings=ratings)

    # ---------- 保存 / 提交 ----------

    async def _autosave(self) -> None:
        await self.save_draft()

    async def save_draft(self) -> bool:
        if self._closed:
            return False
        self._save_timer.cancel()
        if self.gate.is_read_only:
            return False
        if not self.state.has_content():
            logger.debug("[ReviewSession] skipping save, no content (application_id=%s)", self.application_id)
            return False
        return await self._persist(status=self.gate.save_status())

    async def submit(self) -> bool:
        self._ensure_open()
        if self.gate.is_read_only:
            raise ReviewLockedError("Review already submitted")
        self._save_timer.cancel()
        ok = await self._persist(status="submitted")
        if ok and not self._closed:
            self.gate.mark_submitted()
            if self.state.status != "submitted":
                self.state = self.state.model_copy(update={"status": "submitted"})
            self.draft_cache.remove(self.application_id)
            logger.info("[ReviewSession] submitted application_id=%s", self.application_id)
        return ok

    def unlock(self, *, confirmed: bool) -> None:
        self._ensure_open()
        self.gate.unlock(confirmed=confirmed)

    def relock(self) -> None:
        # 放弃再次编辑：已提交的评审恢复只读
        self._ensure_open()
        self.gate.relock()

    async def _persist(self, *, status: Optional[str]) -> bool:
        # 同一会话同一时刻最多一个进行中的保存
        async with self._save_lock:
            if self._closed:
                return False
            snapshot = self.state
            self.save_status = "saving"
            try:
                raw = await asyncio.to_thread(
                    self.gateway.upsert_review,
                    application_id=self.application_id,
                    ratings=snapshot.ratings,
                    score=snapshot.score,
                    comments=snapshot.comments,
                    status=status,
                    decision=snapshot.decision,
                )
            except RpcError as e:
                if self._closed:
                    return False
                # 本地编辑保留，用户可再次保存
                self.save_status = "error"
                self.error = e.message
                return False

            try:
                row = ReviewRow.from_payload(raw)
            except MalformedPayloadError as e:
                logger.warning("[ReviewSession] save succeeded but returned a malformed row: %s", e)
                row = None
            stamp = _stamp(row.updated_at) if row else None
            if stamp:
                self._own_stamps.append(stamp)

            name = self.state.reviewer_name
            if row is not None and row.reviewer_id and row.reviewer_id != self.state.reviewer_id:
                name = await asyncio.to_thread(resolve_reviewer_name, row, self.gateway.get_profile_name)

            if self._closed:
                return False
            self._merge_saved(row, snapshot, name)
            self.save_status = "saved"
            self.error = None
            return True

    def _merge_saved(self, row: Optional[ReviewRow], snapshot: ReviewState, name: Optional[str]) -> None:
        edited_in_flight = self.state is not snapshot
        merged = reconcile(self.application_id, row, self.state, reviewer_name=name)
        if edited_in_flight:
            merged = self._with_local_edits(merged, self.state)
        else:
            self._dirty = False
        self.state = merged
        self.gate.sync(merged.status)

    # ---------- realtime ----------

    def _on_remote_change(self, event: ReviewChangeEvent) -> None:
        if self._closed:
            return
        # 去抖窗口内只关心最后一个事件
        self._remote_stamp = _stamp(event.field("updated_at"))
        self._reload_timer.trigger()

    async def _realtime_reload(self) -> None:
        # 自己保存的回声：服务端行与本地一致，无需重载
        stamp = self._remote_stamp
        if stamp and stamp in self._own_stamps:
            logger.debug("[ReviewSession] ignoring echo of own save (application_id=%s)", self.application_id)
            return
        await self.load()

    # ---------- 视图 ----------

    @property
    def is_read_only(self) -> bool:
        return self.gate.is_read_only

    @property
    def has_unsaved_changes(self) -> bool:
        return self._dirty

    @property
    def last_edited_banner(self) -> Optional[str]:
        return last_edited_banner(self.state)

    @property
    def labelled_answers(self) -> list[LabelledAnswer]:
        return label_answers(self.schema, self.answers)

    def view(self) -> ReviewView:
        return ReviewView(
            application_id=self.application_id,
            loading=self.loading,
            save_status=self.save_status,
            error=self.error,
            review=self.state,
            is_read_only=self.is_read_only,
            unlocked=self.gate.unlocked,
            unsaved_changes=self.has_unsaved_changes,
            last_edited=self.last_edited_banner,
            answers=self.labelled_answers,
            raw_answers=self.answers,
        )

    async def wait_idle(self) -> None:
        """等待已触发的去抖回调跑完（关闭前 / 测试中使用）"""
        await self._save_timer.wait_idle()
        await self._reload_timer.wait_idle()
