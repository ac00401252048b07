from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException

from app.api.v1.common import get_review_sessions, http_error
from app.core.auth_utils import get_current_session
from app.schemas.review import ReviewEdit, UnlockPayload
from app.schemas.session import UserSession
from app.services.collaborative_review import CollaborativeReviewSession
from app.services.review_session_registry import ReviewSessionRegistry

router = APIRouter(prefix="/reviews", tags=["Reviews"])


async def _open_review(
    application_id: UUID,
    session: UserSession,
    sessions: ReviewSessionRegistry,
) -> CollaborativeReviewSession:
    try:
        return await sessions.acquire(session, str(application_id))
    except Exception as e:
        raise http_error(e)


def _view(review: CollaborativeReviewSession) -> dict:
    return {"success": True, "data": review.view().model_dump(mode="json")}


@router.get("/{application_id}")
async def get_review(
    application_id: UUID,
    refresh: bool = False,
    session: UserSession = Depends(get_current_session),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
):
    """
    打开（或复用）协作评审会话，返回申请答案 + 共享评审行 + 状态
    """
    review = await _open_review(application_id, session, sessions)
    if refresh:
        await review.load()
    return _view(review)


@router.patch("/{application_id}")
async def edit_review(
    application_id: UUID,
    payload: ReviewEdit = Body(...),
    session: UserSession = Depends(get_current_session),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
):
    """
    应用编辑并立即返回；保存由去抖定时器异步完成。

    中文注释: 只处理请求体里显式出现的字段；ratings 先于 decision 应用，decision 合并进新 ratings。
    """
    review = await _open_review(application_id, session, sessions)
    fields = payload.model_fields_set
    try:
        if "score" in fields:
            review.set_score(payload.score)
        if "comments" in fields:
            review.set_comments(payload.comments)
        if "ratings" in fields:
            review.set_ratings(payload.ratings or {})
        if "ratings_json" in fields:
            review.set_ratings_json(payload.ratings_json or "")
        if "decision" in fields:
            review.set_decision(payload.decision)
    except (PermissionError, ValueError) as e:
        raise http_error(e)
    return _view(review)


@router.post("/{application_id}/save")
async def save_review(
    application_id: UUID,
    session: UserSession = Depends(get_current_session),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
):
    review = await _open_review(application_id, session, sessions)
    await review.save_draft()
    if review.save_status == "error":
        raise HTTPException(status_code=502, detail=review.error or "Save failed")
    return _view(review)


@router.post("/{application_id}/submit")
async def submit_review(
    application_id: UUID,
    session: UserSession = Depends(get_current_session),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
):
    review = await _open_review(application_id, session, sessions)
    try:
        ok = await review.submit()
    except PermissionError as e:
        raise http_error(e)
    if not ok:
        raise HTTPException(status_code=502, detail=review.error or "Submit failed")
    return _view(review)


@router.post("/{application_id}/unlock")
async def unlock_review(
    application_id: UUID,
    payload: Optional[UnlockPayload] = None,
    session: UserSession = Depends(get_current_session),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
):
    """
    撤回已提交的评审（需显式 confirm=true）；下一次保存会把服务端状态改回 draft
    """
    review = await _open_review(application_id, session, sessions)
    try:
        review.unlock(confirmed=bool(payload and payload.confirm))
    except ValueError as e:
        raise http_error(e)
    return _view(review)


@router.post("/{application_id}/relock")
async def relock_review(
    application_id: UUID,
    session: UserSession = Depends(get_current_session),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
):
    """
    放弃撤回：未做任何修改前恢复只读
    """
    review = await _open_review(application_id, session, sessions)
    review.relock()
    return _view(review)


@router.delete("/{application_id}/session")
async def close_review_session(
    application_id: UUID,
    session: UserSession = Depends(get_current_session),
    sessions: ReviewSessionRegistry = Depends(get_review_sessions),
):
    released = await sessions.release(session, str(application_id))
    return {"success": True, "data": {"released": released}}
