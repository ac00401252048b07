from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Optional

from app.lib.realtime import ChannelFactory
from app.schemas.review import MalformedPayloadError, ReviewChangeEvent

logger = logging.getLogger("corpsreview.realtime")

REVIEWS_TABLE = "application_reviews"
APPLICATIONS_TABLE = "applications"


class ListenerState(str, Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    CLOSED = "closed"


class RealtimeChangeListener:
    """
    订阅某个作用域（application / program）下的行变更，INSERT/UPDATE 时回调 on_change。

    状态机: unsubscribed -> subscribing -> subscribed -> (error | closed)

    中文注释:
    1) 重复 subscribe 是 no-op：重复订阅会导致“重载风暴”。
    2) 服务端 filter 之外再做一次作用域校验，其他 application 的事件一律忽略。
    3) 订阅失败只记日志，不自动重订。
    """

    def __init__(
        self,
        factory: ChannelFactory,
        *,
        table: str,
        column: Optional[str],
        value: Optional[str],
        on_change: Callable[[ReviewChangeEvent], None],
        accept: Optional[Callable[[ReviewChangeEvent], bool]] = None,
        topic: Optional[str] = None,
        verbose: bool = False,
    ):
        self._factory = factory
        self._table = table
        self._column = column
        self._value = str(value) if value is not None else None
        self._on_change = on_change
        self._accept = accept
        self._topic = topic
        self._verbose = verbose
        self._channel: Any = None
        self.state = ListenerState.UNSUBSCRIBED
        self.last_error: Optional[str] = None

    @classmethod
    def for_application(
        cls,
        factory: ChannelFactory,
        application_id: str,
        on_change: Callable[[ReviewChangeEvent], None],
        *,
        verbose: bool = False,
    ) -> "RealtimeChangeListener":
        return cls(
            factory,
            table=REVIEWS_TABLE,
            column="application_id",
            value=application_id,
            on_change=on_change,
            verbose=verbose,
        )

    @classmethod
    def for_program(
        cls,
        factory: ChannelFactory,
        program_id: str,
        on_change: Callable[[ReviewChangeEvent], None],
        *,
        verbose: bool = False,
    ) -> "RealtimeChangeListener":
        return cls(
            factory,
            table=APPLICATIONS_TABLE,
            column="program_id",
            value=program_id,
            on_change=on_change,
            verbose=verbose,
        )

    @classmethod
    def for_program_reviews(
        cls,
        factory: ChannelFactory,
        program_id: str,
        on_change: Callable[[ReviewChangeEvent], None],
        *,
        accept: Callable[[ReviewChangeEvent], bool],
        verbose: bool = False,
    ) -> "RealtimeChangeListener":
        # application_reviews 没有 program_id 列：不加服务端 filter，由 accept 按本队列的 application 过滤
        return cls(
            factory,
            table=REVIEWS_TABLE,
            column=None,
            value=None,
            on_change=on_change,
            accept=accept,
            topic=f"reviews:program:{program_id}",
            verbose=verbose,
        )

    @property
    def topic(self) -> str:
        if self._topic:
            return self._topic
        prefix = "reviews" if self._table == REVIEWS_TABLE else self._table
        return f"{prefix}:{self._value}"

    @property
    def filter_expr(self) -> Optional[str]:
        if self._column is None:
            return None
        return f"{self._column}=eq.{self._value}"

    async def subscribe(self) -> None:
        if self.state in (ListenerState.SUBSCRIBING, ListenerState.SUBSCRIBED):
            return
        if self.state == ListenerState.CLOSED:
            raise RuntimeError("Listener already released")

        self.state = ListenerState.SUBSCRIBING
        self.last_error = None
        try:
            self._channel = await self._factory.open(
                topic=self.topic,
                table=self._table,
                filter_expr=self.filter_expr,
                on_payload=self._handle_payload,
                on_status=self._handle_status,
            )
        except Exception as e:
            self.state = ListenerState.ERROR
            self.last_error = str(e)
            self._log_failure("subscribe failed", e)
            return
        # 之后由 channel 的状态回调推进到 SUBSCRIBED / ERROR

    def _handle_status(self, status: str, err: Optional[Exception] = None) -> None:
        if self.state == ListenerState.CLOSED:
            return
        if status == "SUBSCRIBED":
            self.state = ListenerState.SUBSCRIBED
        elif status in {"CHANNEL_ERROR", "TIMED_OUT"}:
            self.state = ListenerState.ERROR
            self.last_error = str(err) if err else status
            self._log_failure(f"channel {status.lower()}", err)
        elif status == "CLOSED":
            self.state = ListenerState.CLOSED

    def _handle_payload(self, payload: dict[str, Any]) -> None:
        if self.state == ListenerState.CLOSED:
            return
        try:
            event = ReviewChangeEvent.from_payload(payload)
        except MalformedPayloadError as e:
            logger.warning("[Realtime] dropping malformed payload on %s: %s", self.topic, e)
            return

        if event.type == "DELETE":
            return
        if self._column is not None and str(event.field(self._column) or "") != self._value:
            logger.debug("[Realtime] ignoring event outside %s", self.topic)
            return
        if self._accept is not None and not self._accept(event):
            return
        self._on_change(event)

    async def refresh_auth(self, access_token: str) -> None:
        # token 刷新后同步给 realtime 连接；失败只记日志（订阅最多在旧 token 过期时断开）
        if self.state == ListenerState.CLOSED:
            return
        try:
            await self._factory.set_auth(access_token)
        except Exception as e:
            self._log_failure("auth refresh failed", e)

    async def release(self) -> None:
        # 服务端已推送 CLOSED 时 channel 仍需 remove，否则 client 会一直持有它
        channel, self._channel = self._channel, None
        self.state = ListenerState.CLOSED
        if channel is None:
            return
        try:
            await self._factory.close(channel)
        except Exception as e:
            self._log_failure("release failed", e)

    def _log_failure(self, what: str, err: Optional[Exception]) -> None:
        if self._verbose:
            logger.debug("[Realtime] %s on %s: %r", what, self.topic, err, exc_info=err is not None)
        else:
            logger.warning("[Realtime] %s on %s: %s", what, self.topic, err)
