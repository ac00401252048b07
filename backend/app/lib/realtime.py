from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from supabase import AsyncClient

from app.lib.api_client import create_user_realtime_client
from app.schemas.session import UserSession

logger = logging.getLogger("corpsreview.realtime")

PayloadCallback = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[str, Optional[Exception]], None]
ChannelFactoryBuilder = Callable[[UserSession], Awaitable[Optional["ChannelFactory"]]]


class ChannelFactory(Protocol):
    async def open(
        self,
        *,
        topic: str,
        table: str,
        filter_expr: Optional[str],
        on_payload: PayloadCallback,
        on_status: StatusCallback,
    ) -> Any: ...

    async def close(self, channel: Any) -> None: ...

    async def set_auth(self, access_token: str) -> None: ...


def _status_text(state: Any) -> str:
    return str(getattr(state, "value", state) or "").strip().upper()


class SupabaseChannelFactory:
    """
    把 supabase async realtime client 适配成监听器使用的最小接口。

    中文注释:
    - 每个 topic 对应一个 channel，只订阅 public.<table> 的 postgres_changes（INSERT/UPDATE/DELETE）。
    - 释放必须走 remove_channel，否则重新进入页面会重复投递。
    """

    def __init__(self, client: AsyncClient):
        self._client = client

    async def open(
        self,
        *,
        topic: str,
        table: str,
        filter_expr: Optional[str],
        on_payload: PayloadCallback,
        on_status: StatusCallback,
    ) -> Any:
        channel = self._client.channel(topic)
        options: dict[str, Any] = {"schema": "public", "table": table}
        if filter_expr:
            options["filter"] = filter_expr
        channel.on_postgres_changes("*", callback=on_payload, **options)
        await channel.subscribe(lambda state, err=None: on_status(_status_text(state), err))
        return channel

    async def close(self, channel: Any) -> None:
        await self._client.remove_channel(channel)

    async def set_auth(self, access_token: str) -> None:
        await self._client.realtime.set_auth(access_token)


async def open_user_channels(session: UserSession) -> Optional[ChannelFactory]:
    """以当前用户身份建立 realtime 连接；不可用时返回 None（调用方退化为无实时更新）"""
    try:
        client = await create_user_realtime_client(session.access_token)
    except Exception as e:
        logger.warning("[Realtime] unavailable (user_id=%s): %s", session.user_id, e)
        return None
    return SupabaseChannelFactory(client)
