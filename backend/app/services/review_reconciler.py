from __future__ import annotations

import logging
from typing import Callable, Optional
from uuid import UUID

from app.schemas.review import NO_REVIEWER_LABEL, ReviewRow, ReviewState

logger = logging.getLogger("corpsreview.reconciler")

# review_get_v1 在 profile 缺失时用 COALESCE(full_name, 'Unknown') 填充
_PLACEHOLDER_NAMES = {"", "unknown"}


def default_state(application_id: UUID | str) -> ReviewState:
    return ReviewState(application_id=application_id)


def _embedded_name(row: Optional[ReviewRow]) -> Optional[str]:
    name = str((row.reviewer_name if row else None) or "").strip()
    if name.lower() in _PLACEHOLDER_NAMES:
        return None
    return name


def resolve_reviewer_name(
    row: Optional[ReviewRow],
    lookup: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    评审人显示名的回退链：
    1) 行内自带 reviewer_name
    2) 按 reviewer_id 查 profile
    3) 原始 reviewer_id
    4) "No reviewer assigned"

    中文注释: 还没有人开始评审时，join 出来的名字本来就可能为空，这不是错误。
    """
    name = _embedded_name(row)
    if name:
        return name

    reviewer_id = row.reviewer_id if row else None
    if not reviewer_id:
        return NO_REVIEWER_LABEL

    if lookup is not None:
        try:
            looked_up = lookup(reviewer_id)
        except Exception as e:
            logger.warning("[Reconciler] profile lookup failed (reviewer_id=%s): %s", reviewer_id, e)
            looked_up = None
        if looked_up:
            return looked_up
    return reviewer_id


def reconcile(
    application_id: UUID | str,
    fetched: Optional[ReviewRow],
    previous: Optional[ReviewState],
    *,
    reviewer_name: Optional[str] = None,
) -> ReviewState:
    """
    合并 服务端最新行 / 上一次内存态 / 默认值。

    - 服务端行上出现的字段一律胜出（id、评审人、时间戳等服务端字段尤其如此）
    - 行上缺失的字段回退到上一次内存态，再回退到类型默认值
    """
    prev = previous or default_state(application_id)
    row = fetched or ReviewRow()

    ratings = dict(row.ratings) if row.ratings is not None else dict(prev.ratings)
    # 旧数据 decision 存在单独列里；统一折叠进 ratings["decision"]
    if row.decision and not ratings.get("decision"):
        ratings["decision"] = row.decision

    status = row.status if row.status in ("draft", "submitted") else None

    return ReviewState(
        application_id=application_id,
        id=row.id if row.id is not None else prev.id,
        reviewer_id=row.reviewer_id if row.reviewer_id is not None else prev.reviewer_id,
        reviewer_name=reviewer_name if reviewer_name is not None else prev.reviewer_name,
        score=row.score if row.score is not None else prev.score,
        comments=row.comments if row.comments is not None else prev.comments,
        ratings=ratings,
        status=status or prev.status,
        submitted_at=row.submitted_at if row.submitted_at is not None else prev.submitted_at,
        updated_at=row.updated_at if row.updated_at is not None else prev.updated_at,
        created_at=row.created_at if row.created_at is not None else prev.created_at,
    )


def last_edited_banner(state: ReviewState) -> Optional[str]:
    name = (state.reviewer_name or "").strip()
    if not name or name == NO_REVIEWER_LABEL:
        return None
    if state.updated_at is None:
        return f"Last edited by {name}"
    return f"Last edited by {name} at {state.updated_at.strftime('%Y-%m-%d %H:%M UTC')}"
