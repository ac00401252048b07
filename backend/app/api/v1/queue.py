import asyncio
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import ValidationError

from app.api.v1.common import get_queue_feeds, http_error
from app.core.access_gate import AccessGate, get_gateway, require_program_reviewer
from app.core.auth_utils import get_current_session
from app.lib.rpc_gateway import RpcError, RpcGateway
from app.schemas.review import ProgramReviewForm
from app.schemas.session import UserSession
from app.services.review_queue_service import QueueFeedRegistry, list_applicants, list_inbox

router = APIRouter(prefix="/programs", tags=["Review Queue"])


@router.get("/{program_id}/queue")
async def get_program_queue(
    program_id: str,
    _gate: AccessGate = Depends(require_program_reviewer),
    session: UserSession = Depends(get_current_session),
    gateway: RpcGateway = Depends(get_gateway),
    feeds: QueueFeedRegistry = Depends(get_queue_feeds),
):
    """
    Program 评审总览（含尚未开始评审的已提交申请），按最近更新倒序
    """
    try:
        feed = await feeds.feed_for(session, program_id, gateway)
        rows = await feed.read()
    except RpcError as e:
        raise http_error(e)
    return {
        "success": True,
        "data": [r.model_dump(mode="json") for r in rows],
        "live": feed.live,
    }


@router.get("/{program_id}/inbox")
async def get_reviewer_inbox(
    program_id: str,
    status: Optional[str] = None,
    _gate: AccessGate = Depends(require_program_reviewer),
    gateway: RpcGateway = Depends(get_gateway),
):
    """
    Reviewer 收件箱（按提交先后排序）
    """
    try:
        items = await asyncio.to_thread(list_inbox, gateway, program_id, status)
    except RpcError as e:
        raise http_error(e)
    return {"success": True, "data": [it.model_dump(mode="json") for it in items]}


@router.get("/{program_id}/applicants")
async def get_applicant_queue(
    program_id: str,
    status: Optional[str] = "submitted",
    _gate: AccessGate = Depends(require_program_reviewer),
    gateway: RpcGateway = Depends(get_gateway),
):
    """
    等待评审的申请（默认只看已提交），按提交时间先后
    """
    try:
        items = await asyncio.to_thread(list_applicants, gateway, program_id, status)
    except RpcError as e:
        raise http_error(e)
    return {"success": True, "data": [it.model_dump(mode="json") for it in items]}


@router.get("/{program_id}/review-form")
async def get_review_form(
    program_id: str,
    _gate: AccessGate = Depends(require_program_reviewer),
    gateway: RpcGateway = Depends(get_gateway),
):
    # 中文注释: 表单配置拉取失败时使用默认配置（score + comments，无 decision）
    try:
        raw = await asyncio.to_thread(gateway.get_program_review_form, program_id)
        form = ProgramReviewForm.model_validate(raw) if raw else ProgramReviewForm()
    except (RpcError, ValidationError):
        form = ProgramReviewForm()
    return {"success": True, "data": form.model_dump()}
