from supabase import AsyncClient, Client, acreate_client, create_client
from app.core.config import app_config
from typing import Any, Optional, Callable

# 中文注释:
# - 本服务只持有公开的 anon key；所有读写都以“当前用户”身份执行，权限完全交给 RLS 与服务端 RPC。
# - 测试会 monkeypatch 这两个模块级变量，所以下面的函数每次调用时都重新读取。
url: str = app_config.supabase_url
key: str = app_config.supabase_anon_key


class _LazySupabaseClient:
    """
    第一次访问属性时才创建 Client；缺少 URL/KEY 时在那一刻抛出清晰错误，而不是在 import 时。
    """

    def __init__(self, factory: Callable[[], Client]):
        self._factory = factory
        self._client: Optional[Client] = None

    def __getattr__(self, item: str) -> Any:
        if self._client is None:
            self._client = self._factory()
        return getattr(self._client, item)


def _credentials() -> tuple[str, str]:
    if not url:
        raise RuntimeError("SUPABASE_URL is required")
    if not key:
        raise RuntimeError("SUPABASE_ANON_KEY or SUPABASE_KEY is required")
    return url, key


def _require_token(access_token: str) -> str:
    token = (access_token or "").strip()
    if not token:
        raise ValueError("access token is required for a user-scoped client")
    return token


# 匿名客户端：只用于 Auth API 校验 bearer token
supabase: Client = _LazySupabaseClient(lambda: create_client(*_credentials()))  # type: ignore[assignment]


def create_user_supabase_client(access_token: str) -> Client:
    """
    以当前 reviewer 身份调用 PostgREST / RPC。

    中文注释: 每个评审会话一个 client；不能在共享实例上 postgrest.auth(token)，否则并发会话会串号。
    """
    token = _require_token(access_token)
    client = create_client(*_credentials())
    client.postgrest.auth(token)
    return client


async def create_user_realtime_client(access_token: str) -> AsyncClient:
    # realtime 订阅只有 async client 支持；注入 JWT 后推送同样受 RLS 过滤
    token = _require_token(access_token)
    client = await acreate_client(*_credentials())
    await client.realtime.set_auth(token)
    return client
