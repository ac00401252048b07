import asyncio
from typing import Any, Optional

import pytest

from app.core.access_gate import (
    AccessDenied,
    coalition_manager_gate,
    org_admin_gate,
    org_reviewer_gate,
    program_reviewer_gate,
    super_admin_gate,
)
from app.lib.rpc_gateway import RpcError
from app.schemas.capabilities import Capabilities, CapabilitiesView, OrgMini
from app.schemas.session import UserSession
from app.services.capability_service import (
    CapabilityLoader,
    CapabilityPoller,
    CapabilityPollerRegistry,
    compute_capabilities,
)

PROGRAM_A = "33333333-3333-3333-3333-333333333333"
PROGRAM_B = "44444444-4444-4444-4444-444444444444"


class _CapGateway:
    def __init__(
        self,
        *,
        admin_orgs: Optional[list[dict[str, Any]]] = None,
        reviewer_orgs: Optional[list[dict[str, Any]]] = None,
        programs: Optional[list[dict[str, Any]]] = None,
        coalitions: Optional[list[dict[str, Any]]] = None,
        profile: Optional[dict[str, Any]] = None,
        live: Optional[set[str]] = None,
        fail: Optional[set[str]] = None,
    ):
        self.admin_orgs = admin_orgs or []
        self.reviewer_orgs = reviewer_orgs or []
        self.programs = programs or []
        self.coalitions = coalitions or []
        self.profile = profile or {"role": "member", "deleted_at": None}
        self.live = live
        self.fail = fail or set()
        self.calls = 0

    def _maybe_fail(self, name: str) -> None:
        self.calls += 1
        if name in self.fail:
            raise RpcError(f"{name} failed", procedure=name)

    def my_admin_orgs(self):
        self._maybe_fail("my_admin_orgs_v1")
        return self.admin_orgs

    def my_reviewer_orgs(self):
        self._maybe_fail("my_reviewer_orgs_v1")
        return self.reviewer_orgs

    def my_reviewer_programs(self):
        self._maybe_fail("my_reviewer_programs_v2")
        return self.programs

    def my_coalitions(self):
        self._maybe_fail("my_coalitions_v1")
        return self.coalitions

    def get_user_role(self, user_id):
        self._maybe_fail("profiles.role")
        return self.profile

    def filter_live_programs(self, ids):
        self._maybe_fail("programs.live")
        ids = set(ids)
        return ids if self.live is None else ids & self.live


def _session(user_id: str = "user-1") -> UserSession:
    return UserSession(user_id=user_id, access_token="jwt")


# --- compute ---


def test_compute_collects_all_capabilities():
    gateway = _CapGateway(
        admin_orgs=[{"id": "o1", "name": "Blue Stars", "slug": "blue-stars"}],
        programs=[{"program_id": PROGRAM_A, "name": "2026 Brass", "organization_slug": "blue-stars"}],
        coalitions=[{"id": "c1", "name": "Midwest", "slug": "midwest"}],
        profile={"role": "admin"},
    )

    caps = compute_capabilities(gateway, _session())  # type: ignore[arg-type]

    assert [o.slug for o in caps.admin_orgs] == ["blue-stars"]
    assert [p.id for p in caps.reviewer_programs] == [PROGRAM_A]
    assert [c.slug for c in caps.coalitions] == ["midwest"]
    assert caps.user_role == "admin"
    view = CapabilitiesView.of(caps)
    assert view.is_org_admin and view.has_reviewer_assignments and view.is_super_admin


def test_compute_filters_deleted_programs():
    gateway = _CapGateway(
        programs=[{"program_id": PROGRAM_A}, {"program_id": PROGRAM_B}],
        live={PROGRAM_B},
    )
    caps = compute_capabilities(gateway, _session())  # type: ignore[arg-type]
    assert [p.id for p in caps.reviewer_programs] == [PROGRAM_B]


def test_compute_soft_deleted_profile_has_nothing():
    gateway = _CapGateway(
        admin_orgs=[{"id": "o1", "slug": "x"}],
        profile={"role": "superadmin", "deleted_at": "2026-01-01T00:00:00Z"},
    )
    caps = compute_capabilities(gateway, _session())  # type: ignore[arg-type]
    assert caps == Capabilities()
    assert caps.has_any_capabilities() is False


def test_compute_treats_failed_rpc_as_empty():
    gateway = _CapGateway(
        admin_orgs=[{"id": "o1", "slug": "x"}],
        programs=[{"program_id": PROGRAM_A}],
        fail={"my_admin_orgs_v1", "programs.live"},
    )
    caps = compute_capabilities(gateway, _session())  # type: ignore[arg-type]
    assert caps.admin_orgs == []
    # 过滤失败时保留全部 program
    assert [p.id for p in caps.reviewer_programs] == [PROGRAM_A]


def test_compute_skips_malformed_rows():
    gateway = _CapGateway(coalitions=[{"name": "no id"}, {"id": "c1", "slug": "ok"}])
    caps = compute_capabilities(gateway, _session())  # type: ignore[arg-type]
    assert [c.id for c in caps.coalitions] == ["c1"]


def test_role_alone_grants_capabilities():
    assert Capabilities(user_role="reviewer").has_any_capabilities() is True
    assert Capabilities(user_role="member").has_any_capabilities() is False


# --- loader / poller ---


@pytest.mark.asyncio
async def test_loader_dedupes_calls_within_window():
    gateway = _CapGateway(admin_orgs=[{"id": "o1", "slug": "x"}])
    loader = CapabilityLoader(dedupe_sec=60)

    first, second = await asyncio.gather(
        loader.load(gateway, _session()),  # type: ignore[arg-type]
        loader.load(gateway, _session()),  # type: ignore[arg-type]
    )
    third = await loader.load(gateway, _session())  # type: ignore[arg-type]

    assert first == second == third
    # profile + 3 个能力 RPC（无 program 时不过滤）
    assert gateway.calls == 4

    loader.invalidate("user-1")
    await loader.load(gateway, _session())  # type: ignore[arg-type]
    assert gateway.calls == 8


@pytest.mark.asyncio
async def test_loader_without_dedupe_recomputes():
    gateway = _CapGateway()
    loader = CapabilityLoader(dedupe_sec=0)
    await loader.load(gateway, _session())  # type: ignore[arg-type]
    await loader.load(gateway, _session())  # type: ignore[arg-type]
    assert gateway.calls == 8


@pytest.mark.asyncio
async def test_loader_does_not_cache_failures():
    loader = CapabilityLoader(dedupe_sec=60)

    class _Broken(_CapGateway):
        def get_user_role(self, user_id):
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await loader.load(_Broken(), _session())  # type: ignore[arg-type]

    caps = await loader.load(_CapGateway(profile={"role": "reviewer"}), _session())  # type: ignore[arg-type]
    assert caps.user_role == "reviewer"


@pytest.mark.asyncio
async def test_poller_refreshes_on_dashboard_and_visibility():
    results = [Capabilities(user_role="member")]

    async def _load():
        return results[-1]

    changes = []
    poller = CapabilityPoller(_load, interval_sec=60, on_change=changes.append)

    await poller.refresh()
    await poller.route_changed("/settings")
    await poller.visibility_changed(visible=False)
    assert poller.refresh_count == 1

    results.append(Capabilities(user_role="admin"))
    await poller.route_changed("/dashboard/")
    await poller.visibility_changed(visible=True)

    assert poller.refresh_count == 3
    assert poller.capabilities.user_role == "admin"  # type: ignore[union-attr]
    assert [c.user_role for c in changes] == ["member", "admin"]


@pytest.mark.asyncio
async def test_poller_keeps_previous_on_error():
    calls = {"n": 0}

    async def _load():
        calls["n"] += 1
        if calls["n"] > 1:
            raise RpcError("offline", procedure="my_admin_orgs_v1")
        return Capabilities(admin_orgs=[OrgMini(id="o1")])

    poller = CapabilityPoller(_load)
    await poller.refresh()
    result = await poller.refresh()

    assert result is poller.capabilities
    assert poller.capabilities.is_org_admin  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_poller_runs_periodically_until_stopped():
    async def _load():
        return Capabilities()

    poller = CapabilityPoller(_load, interval_sec=0.01)
    poller.start()
    poller.start()
    await asyncio.sleep(0.05)
    await poller.stop()

    count = poller.refresh_count
    assert count >= 2
    assert poller.running is False
    await asyncio.sleep(0.03)
    assert poller.refresh_count == count


@pytest.mark.asyncio
async def test_registry_uses_latest_session_token():
    seen = []

    def factory(session):
        seen.append(session.access_token)
        return _CapGateway()

    registry = CapabilityPollerRegistry(CapabilityLoader(dedupe_sec=0), gateway_factory=factory)
    poller = registry.for_session(UserSession(user_id="u1", access_token="old"))
    assert registry.for_session(UserSession(user_id="u1", access_token="new")) is poller

    await poller.refresh()
    assert seen == ["new"]
    await registry.close_all()


@pytest.mark.asyncio
async def test_registry_invalidate_recomputes_inside_dedupe_window():
    gateway = _CapGateway()
    registry = CapabilityPollerRegistry(CapabilityLoader(dedupe_sec=60), gateway_factory=lambda s: gateway)
    session = _session()

    poller = registry.for_session(session)
    await poller.refresh()
    assert poller.capabilities.is_org_admin is False  # type: ignore[union-attr]

    # 刚被加为组织管理员：去抖窗口内普通刷新仍拿到旧结果
    gateway.admin_orgs = [{"id": "o1", "slug": "blue-stars"}]
    await poller.refresh()
    assert poller.capabilities.is_org_admin is False  # type: ignore[union-attr]

    caps = await registry.invalidate(session)
    assert caps is poller.capabilities
    assert caps.is_org_admin is True  # type: ignore[union-attr]
    await registry.close_all()


# --- access gates ---


def test_org_admin_gate():
    gateway = _CapGateway(admin_orgs=[{"id": "o1", "slug": "blue-stars"}])
    assert org_admin_gate(gateway, "blue-stars").evaluate() is True  # type: ignore[arg-type]

    gate = org_admin_gate(gateway, "other")  # type: ignore[arg-type]
    assert gate.state == "pending"
    with pytest.raises(AccessDenied) as exc:
        gate.enforce()
    assert gate.state == "denied"
    assert exc.value.redirect_to == "/unauthorized"


def test_org_reviewer_gate_accepts_program_org():
    gateway = _CapGateway(programs=[{"program_id": PROGRAM_A, "organization_slug": "crossmen"}])
    assert org_reviewer_gate(gateway, "crossmen").evaluate() is True  # type: ignore[arg-type]
    assert org_reviewer_gate(gateway, "other").evaluate() is False  # type: ignore[arg-type]


def test_program_reviewer_gate_allows_assigned_or_superadmin():
    assigned = _CapGateway(programs=[{"program_id": PROGRAM_A}])
    assert program_reviewer_gate(assigned, _session(), PROGRAM_A).evaluate() is True  # type: ignore[arg-type]
    assert program_reviewer_gate(assigned, _session(), PROGRAM_B).evaluate() is False  # type: ignore[arg-type]

    superadmin = _CapGateway(profile={"role": "superadmin"})
    assert program_reviewer_gate(superadmin, _session(), PROGRAM_B).evaluate() is True  # type: ignore[arg-type]


def test_super_admin_gate_rejects_deleted_profile():
    deleted = _CapGateway(profile={"role": "superadmin", "deleted_at": "2026-01-01"})
    assert super_admin_gate(deleted, _session()).evaluate() is False  # type: ignore[arg-type]


def test_gate_rpc_error_is_denial():
    gateway = _CapGateway(coalitions=[{"id": "c1", "slug": "midwest"}], fail={"my_coalitions_v1"})
    gate = coalition_manager_gate(gateway, "midwest")  # type: ignore[arg-type]
    assert gate.evaluate() is False
    assert gate.state == "denied"
