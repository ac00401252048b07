from typing import Optional

from fastapi import APIRouter, Depends

from app.api.v1.common import get_capability_pollers
from app.core.access_gate import (
    AccessGate,
    require_coalition_manager,
    require_org_admin,
    require_org_reviewer,
    require_super_admin,
)
from app.core.auth_utils import get_current_session
from app.schemas.capabilities import Capabilities, CapabilitiesView
from app.schemas.session import UserSession
from app.services.capability_service import CapabilityPollerRegistry

router = APIRouter(tags=["Capabilities"])


@router.get("/me/capabilities")
async def get_my_capabilities(
    route: Optional[str] = None,
    visible: Optional[bool] = None,
    refresh: bool = False,
    session: UserSession = Depends(get_current_session),
    pollers: CapabilityPollerRegistry = Depends(get_capability_pollers),
):
    """
    当前用户的能力集合（导航菜单用）。

    中文注释:
    - 首次请求立即计算并启动后台轮询；之后返回轮询结果。
    - route=/dashboard 或 visible=true 时强制重新计算（对应前端切到 dashboard / 页面重新可见）。
    - refresh=true 绕过去抖缓存（刚加入 / 退出组织后）。
    """
    poller = pollers.for_session(session)
    if refresh:
        await pollers.invalidate(session)
        poller.start()
    elif poller.capabilities is None:
        await poller.refresh()
        poller.start()
    elif route:
        await poller.route_changed(route)
    elif visible is not None:
        await poller.visibility_changed(visible=visible)

    caps = poller.capabilities or Capabilities()
    return {"success": True, "data": CapabilitiesView.of(caps).model_dump()}


def _gate_result(gate: AccessGate) -> dict:
    return {"success": True, "data": {"gate": gate.name, "state": gate.state}}


@router.get("/orgs/{slug}/access")
async def check_org_admin_access(gate: AccessGate = Depends(require_org_admin)):
    return _gate_result(gate)


@router.get("/orgs/{slug}/review-access")
async def check_org_reviewer_access(gate: AccessGate = Depends(require_org_reviewer)):
    return _gate_result(gate)


@router.get("/coalitions/{slug}/access")
async def check_coalition_access(gate: AccessGate = Depends(require_coalition_manager)):
    return _gate_result(gate)


@router.get("/super/access")
async def check_super_access(gate: AccessGate = Depends(require_super_admin)):
    return _gate_result(gate)
