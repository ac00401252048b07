import asyncio
import copy
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Optional
from uuid import uuid4

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# 中文注释: 必须在导入 app 之前设置，AppConfig 在 import 时读取环境变量
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("SUPABASE_URL", "https://example.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "anon-test-key")

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from main import app  # noqa: E402

from app.core.config import ReviewTimingConfig  # noqa: E402
from app.lib.rpc_gateway import RpcError  # noqa: E402
from app.schemas.session import UserSession  # noqa: E402
from app.services.collaborative_review import CollaborativeReviewSession  # noqa: E402
from app.services.draft_cache import LocalDraftCache  # noqa: E402

# === 全局测试配置 ===
# 中文注释:
# 1. FakeReviewServer 模拟服务端 RPC 语义：每个 application 一行共享评审，整行 last-write-wins。
# 2. FakeRealtimeHub 模拟 postgres_changes 推送：事件总是在事件循环里异步投递（与真实 websocket 一致）。
# 3. 去抖时间缩短到几十毫秒，测试里用 settle fixture 等待。

AUTOSAVE_SEC = 0.05
REALTIME_SEC = 0.01


async def _settle(*sessions: Any, rounds: int = 3) -> None:
    """等待去抖定时器触发并让回调跑完"""
    for _ in range(rounds):
        await asyncio.sleep(AUTOSAVE_SEC + 0.03)
        for s in sessions:
            await s.wait_idle()


class FakeChannel:
    def __init__(self, hub: "FakeRealtimeHub", topic: str, table: str, filter_expr: str, on_payload, on_status):
        self.hub = hub
        self.topic = topic
        self.table = table
        self.filter_expr = filter_expr
        self.on_payload = on_payload
        self.on_status = on_status
        self.closed = False

    def matches(self, table: str, record: dict[str, Any]) -> bool:
        if self.closed or self.table != table:
            return False
        if not self.filter_expr:
            return True
        column, _, value = self.filter_expr.partition("=eq.")
        return str(record.get(column)) == value


class FakeChannelFactory:
    def __init__(self, hub: "FakeRealtimeHub", *, auto_subscribe: bool = True, fail_open: bool = False):
        self.hub = hub
        self.auto_subscribe = auto_subscribe
        self.fail_open = fail_open
        self.opened: list[FakeChannel] = []
        self.closed: list[FakeChannel] = []
        self.tokens: list[str] = []

    async def open(self, *, topic, table, filter_expr, on_payload, on_status):
        if self.fail_open:
            raise RuntimeError("realtime unavailable")
        self.hub.loop = asyncio.get_running_loop()
        channel = FakeChannel(self.hub, topic, table, filter_expr, on_payload, on_status)
        self.hub.channels.append(channel)
        self.opened.append(channel)
        if self.auto_subscribe:
            on_status("SUBSCRIBED", None)
        return channel

    async def close(self, channel: FakeChannel) -> None:
        channel.closed = True
        self.closed.append(channel)
        if channel in self.hub.channels:
            self.hub.channels.remove(channel)

    async def set_auth(self, access_token: str) -> None:
        self.tokens.append(access_token)


class FakeRealtimeHub:
    def __init__(self):
        self.channels: list[FakeChannel] = []
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.delivered = 0

    def factory(self, **kwargs: Any) -> FakeChannelFactory:
        return FakeChannelFactory(self, **kwargs)

    def live_channels(self, topic: Optional[str] = None) -> list[FakeChannel]:
        return [c for c in self.channels if not c.closed and (topic is None or c.topic == topic)]

    def broadcast(self, table: str, record: dict[str, Any], change_type: str = "UPDATE") -> None:
        # 中文注释: 可能在工作线程里被调用（网关是同步的），所以投递回事件循环
        if self.loop is None:
            return
        payload = {
            "data": {
                "type": change_type,
                "table": table,
                "schema": "public",
                "record": copy.deepcopy(record),
                "old_record": {},
                "commit_timestamp": datetime.now(timezone.utc).isoformat(),
            },
            "ids": [1],
        }
        self.loop.call_soon_threadsafe(self._deliver, table, payload)

    def _deliver(self, table: str, payload: dict[str, Any]) -> None:
        for channel in list(self.channels):
            if channel.matches(table, payload["data"]["record"]):
                self.delivered += 1
                channel.on_payload(copy.deepcopy(payload))


class FakeReviewServer:
    """
    服务端 RPC 的内存替身（按 app_upsert_review_v1 / review_get_v1 的语义实现）
    """

    def __init__(self, hub: Optional[FakeRealtimeHub] = None):
        self.hub = hub
        self.applications: dict[str, dict[str, Any]] = {}
        self.reviews: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, str] = {}
        self.schemas: dict[str, dict[str, Any]] = {}
        self.review_forms: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.fail: set[str] = set()
        self.embed_schema = True
        self._clock = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def add_application(
        self,
        *,
        program_id: Optional[str] = None,
        answers: Optional[dict[str, Any]] = None,
        status: str = "submitted",
    ) -> str:
        app_id = str(uuid4())
        self.applications[app_id] = {
            "id": app_id,
            "program_id": program_id or str(uuid4()),
            "answers": answers or {},
            "status": status,
        }
        return app_id

    def gateway(self, user_id: str) -> "FakeGateway":
        return FakeGateway(self, user_id)

    def count(self, procedure: str, user_id: Optional[str] = None) -> int:
        return sum(1 for p, u, _ in self.calls if p == procedure and (user_id is None or u == user_id))


class FakeGateway:
    """与 RpcGateway 同名同签名的方法（会话只依赖这些）"""

    def __init__(self, server: FakeReviewServer, user_id: str):
        self.server = server
        self.user_id = user_id

    def _record(self, procedure: str, params: Optional[dict[str, Any]] = None) -> None:
        self.server.calls.append((procedure, self.user_id, dict(params or {})))
        if procedure in self.server.fail:
            raise RpcError(f"{procedure} failed", procedure=procedure, code="XX000")

    def fetch_review_bundle(self, application_id: str) -> Optional[dict[str, Any]]:
        self._record("review_get_v1", {"p_application_id": application_id})
        app_row = self.server.applications.get(str(application_id))
        if app_row is None:
            return None
        row = self.server.reviews.get(str(application_id))
        review: dict[str, Any] = {}
        if row:
            review = {**row, "reviewer_name": self.server.profiles.get(row["reviewer_id"], "Unknown")}
        schema = self.server.schemas.get(app_row["program_id"], {}) if self.server.embed_schema else {}
        return {
            "application_id": app_row["id"],
            "program_id": app_row["program_id"],
            "applicant_answers": copy.deepcopy(app_row["answers"]),
            "application_schema": copy.deepcopy(schema),
            "review": copy.deepcopy(review),
        }

    def upsert_review(self, *, application_id, ratings, score, comments, status, decision=None):
        params = {
            "p_application_id": str(application_id),
            "p_score": score,
            "p_comments": comments,
            "p_ratings": dict(ratings or {}),
            "p_status": status,
            "p_decision": decision,
        }
        self._record("app_upsert_review_v1", params)
        now = self.server.tick()
        row = self.server.reviews.get(str(application_id))
        if row is None:
            row = {
                "id": str(uuid4()),
                "application_id": str(application_id),
                "reviewer_id": self.user_id,
                "status": "draft",
                "created_at": now,
                "submitted_at": None,
            }
        merged_ratings = dict(ratings or {})
        if decision:
            merged_ratings["decision"] = decision
        row.update({"score": score, "comments": comments, "ratings": merged_ratings, "updated_at": now})
        # reviewer_id 保持首个创建者；status=None 保持当前状态；撤回时保留 submitted_at
        if status is not None:
            row["status"] = status
            if status == "submitted":
                row["submitted_at"] = now
        self.server.reviews[str(application_id)] = row
        if self.server.hub is not None:
            self.server.hub.broadcast("application_reviews", row)
        return copy.deepcopy(row)

    def load_application(self, application_id: str) -> Optional[dict[str, Any]]:
        self._record("applications")
        row = self.server.applications.get(str(application_id))
        return copy.deepcopy(row) if row else None

    def load_review_row(self, application_id: str) -> Optional[dict[str, Any]]:
        self._record("application_reviews")
        row = self.server.reviews.get(str(application_id))
        return copy.deepcopy(row) if row else None

    def get_program_schema(self, program_id: str) -> dict[str, Any]:
        self._record("programs_public")
        return copy.deepcopy(self.server.schemas.get(str(program_id), {}))

    def get_profile_name(self, user_id: str) -> Optional[str]:
        self._record("profiles.full_name")
        return self.server.profiles.get(str(user_id))

    def get_program_review_form(self, program_id: str) -> Optional[dict[str, Any]]:
        self._record("get_program_review_form")
        return copy.deepcopy(self.server.review_forms.get(str(program_id)))


@pytest.fixture
def hub() -> FakeRealtimeHub:
    return FakeRealtimeHub()


@pytest.fixture
def server(hub: FakeRealtimeHub) -> FakeReviewServer:
    return FakeReviewServer(hub)


@pytest.fixture
def timing(tmp_path) -> ReviewTimingConfig:
    return ReviewTimingConfig(
        autosave_debounce_sec=AUTOSAVE_SEC,
        realtime_debounce_sec=REALTIME_SEC,
        draft_cache_dir=str(tmp_path / "drafts"),
        capabilities_poll_sec=30.0,
        capabilities_dedupe_sec=5.0,
    )


@pytest.fixture
def make_user_session() -> Callable[..., UserSession]:
    def _make(user_id: Optional[str] = None, email: str = "reviewer@example.com") -> UserSession:
        return UserSession(user_id=user_id or str(uuid4()), email=email, access_token="token-" + uuid4().hex)

    return _make


@pytest.fixture
def settle():
    return _settle


@pytest_asyncio.fixture
async def open_review(server: FakeReviewServer, hub: FakeRealtimeHub, timing: ReviewTimingConfig, tmp_path):
    """
    以某个用户身份打开评审会话；测试结束时统一 close
    """
    opened: list[CollaborativeReviewSession] = []

    async def _open(
        user_id: str,
        application_id: str,
        *,
        realtime: bool = True,
        factory: Optional[FakeChannelFactory] = None,
    ) -> CollaborativeReviewSession:
        review = CollaborativeReviewSession(
            application_id=application_id,
            gateway=server.gateway(user_id),
            draft_cache=LocalDraftCache(tmp_path / "drafts" / user_id),
            timing=timing,
            channel_factory=(factory or hub.factory()) if realtime else None,
            origin_id=user_id,
        )
        opened.append(review)
        await review.open()
        return review

    yield _open
    for review in opened:
        await review.close()

@pytest_asyncio.fixture
async def client() -> AsyncGenerator:
    """
    提供一个模拟的异步测试客户端
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver"
    ) as ac:
        yield ac


def generate_test_token(user_id: str = "00000000-0000-0000-0000-000000000001", email: str = "test@example.com"):
    """
    生成用于测试的 JWT（HS256，与 SUPABASE_JWT_SECRET 一致）
    """
    secret = os.environ["SUPABASE_JWT_SECRET"]
    now = datetime.now(timezone.utc)

    payload = {
        "sub": user_id,
        "email": email,
        "aud": "authenticated",
        "exp": now + timedelta(hours=1),
        "iat": now,
        "role": "authenticated",
    }

    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_token():
    return generate_test_token()


@pytest.fixture
def expired_token():
    secret = os.environ["SUPABASE_JWT_SECRET"]
    now = datetime.now(timezone.utc)

    payload = {
        "sub": "00000000-0000-0000-0000-000000000001",
        "email": "test@example.com",
        "aud": "authenticated",
        "exp": now - timedelta(hours=1),  # 已过期
        "iat": now - timedelta(hours=2),
        "role": "authenticated",
    }

    return jwt.encode(payload, secret, algorithm="HS256")
