import asyncio
import logging
from typing import Callable, Literal, Optional

from fastapi import Depends

from app.core.auth_utils import get_current_session
from app.lib.rpc_gateway import RpcError, RpcGateway
from app.schemas.session import UserSession

logger = logging.getLogger("corpsreview.access")

GateState = Literal["pending", "allowed", "denied"]

UNAUTHORIZED_PATH = "/unauthorized"


class AccessDenied(PermissionError):
    def __init__(self, message: str = "Access denied", *, redirect_to: str = UNAUTHORIZED_PATH):
        super().__init__(message)
        self.message = message
        self.redirect_to = redirect_to


def get_gateway(session: UserSession = Depends(get_current_session)) -> RpcGateway:
    # 每个请求以当前用户身份构造网关（RLS 由服务端判定）
    return RpcGateway.for_session(session)


class AccessGate:
    """
    路由门禁：pending -> allowed | denied

    中文注释:
    1) 每次进入受保护路由都重新调用能力 RPC，不跨路由缓存结果。
    2) RPC 出错等同于拒绝（跳转 /unauthorized）。
    """

    def __init__(self, name: str, check: Callable[[], bool]):
        self.name = name
        self._check = check
        self.state: GateState = "pending"

    def evaluate(self) -> bool:
        try:
            ok = bool(self._check())
        except RpcError as e:
            logger.warning("[Access] %s check failed: %s", self.name, e.message)
            ok = False
        self.state = "allowed" if ok else "denied"
        return ok

    def enforce(self) -> None:
        if not self.evaluate():
            raise AccessDenied(f"Access denied: {self.name}")


def _slug_matches(rows: list[dict], slug: str, key: str = "slug") -> bool:
    return any(str((r or {}).get(key) or "") == slug for r in rows or [])


def org_admin_gate(gateway: RpcGateway, org_slug: str) -> AccessGate:
    return AccessGate("org_admin", lambda: _slug_matches(gateway.my_admin_orgs(), org_slug))


def org_reviewer_gate(gateway: RpcGateway, org_slug: str) -> AccessGate:
    def _check() -> bool:
        orgs = gateway.my_reviewer_orgs()
        programs = gateway.my_reviewer_programs()
        return _slug_matches(orgs, org_slug) or _slug_matches(programs, org_slug, "organization_slug")

    return AccessGate("org_reviewer", _check)


def program_reviewer_gate(gateway: RpcGateway, session: UserSession, program_id: str) -> AccessGate:
    def _check() -> bool:
        programs = gateway.my_reviewer_programs()
        if any(str(p.get("program_id") or p.get("id") or "") == str(program_id) for p in programs or []):
            return True
        # superadmin 可以进入任何 program 的评审队列
        return _is_live_superadmin(gateway, session)

    return AccessGate("program_reviewer", _check)


def coalition_manager_gate(gateway: RpcGateway, coalition_slug: str) -> AccessGate:
    return AccessGate("coalition_manager", lambda: _slug_matches(gateway.my_coalitions(), coalition_slug))


def _is_live_superadmin(gateway: RpcGateway, session: UserSession) -> bool:
    profile = gateway.get_user_role(session.user_id) or {}
    if profile.get("deleted_at"):
        return False
    return profile.get("role") == "superadmin"


def super_admin_gate(gateway: RpcGateway, session: UserSession) -> AccessGate:
    return AccessGate("super_admin", lambda: _is_live_superadmin(gateway, session))


async def _enforce(gate: AccessGate) -> AccessGate:
    await asyncio.to_thread(gate.enforce)
    return gate


# === FastAPI dependencies ===


async def require_org_admin(slug: str, gateway: RpcGateway = Depends(get_gateway)) -> AccessGate:
    return await _enforce(org_admin_gate(gateway, slug))


async def require_org_reviewer(slug: str, gateway: RpcGateway = Depends(get_gateway)) -> AccessGate:
    return await _enforce(org_reviewer_gate(gateway, slug))


async def require_program_reviewer(
    program_id: str,
    session: UserSession = Depends(get_current_session),
    gateway: RpcGateway = Depends(get_gateway),
) -> AccessGate:
    return await _enforce(program_reviewer_gate(gateway, session, program_id))


async def require_coalition_manager(slug: str, gateway: RpcGateway = Depends(get_gateway)) -> AccessGate:
    return await _enforce(coalition_manager_gate(gateway, slug))


async def require_super_admin(
    session: UserSession = Depends(get_current_session),
    gateway: RpcGateway = Depends(get_gateway),
) -> AccessGate:
    return await _enforce(super_admin_gate(gateway, session))


def access_denied_body(err: AccessDenied, detail: Optional[str] = None) -> dict:
    return {"detail": detail or err.message, "redirect_to": err.redirect_to}
