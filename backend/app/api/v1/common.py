import logging
from typing import Optional

from fastapi import HTTPException

from app.core.config import ReviewTimingConfig
from app.lib.rpc_gateway import RpcError
from app.services.capability_service import CapabilityLoader, CapabilityPollerRegistry
from app.services.review_queue_service import QueueFeedRegistry
from app.services.review_session_registry import ReviewSessionRegistry

logger = logging.getLogger("corpsreview.api")

_timing: Optional[ReviewTimingConfig] = None
_review_sessions: Optional[ReviewSessionRegistry] = None
_capability_pollers: Optional[CapabilityPollerRegistry] = None
_queue_feeds: Optional[QueueFeedRegistry] = None


def _get_timing() -> ReviewTimingConfig:
    global _timing
    if _timing is None:
        _timing = ReviewTimingConfig.from_env()
    return _timing


def get_review_sessions() -> ReviewSessionRegistry:
    global _review_sessions
    if _review_sessions is None:
        _review_sessions = ReviewSessionRegistry(timing=_get_timing())
    return _review_sessions


def get_capability_pollers() -> CapabilityPollerRegistry:
    global _capability_pollers
    if _capability_pollers is None:
        timing = _get_timing()
        _capability_pollers = CapabilityPollerRegistry(
            CapabilityLoader(dedupe_sec=timing.capabilities_dedupe_sec),
            interval_sec=timing.capabilities_poll_sec,
        )
    return _capability_pollers


def get_queue_feeds() -> QueueFeedRegistry:
    global _queue_feeds
    if _queue_feeds is None:
        timing = _get_timing()
        _queue_feeds = QueueFeedRegistry(
            debounce_sec=timing.realtime_debounce_sec,
            idle_sec=timing.session_idle_sec,
            sweep_sec=timing.session_sweep_sec,
        )
    return _queue_feeds


async def shutdown_runtime() -> None:
    """应用关闭时释放所有会话 / 订阅 / 轮询任务"""
    global _review_sessions, _capability_pollers, _queue_feeds
    if _review_sessions is not None:
        await _review_sessions.close_all()
    if _capability_pollers is not None:
        await _capability_pollers.close_all()
    if _queue_feeds is not None:
        await _queue_feeds.close_all()
    _review_sessions = _capability_pollers = _queue_feeds = None


def http_error(e: Exception) -> HTTPException:
    """
    服务层异常 -> HTTPException

    中文注释:
    - PermissionError -> 403（含已提交锁定）
    - RpcError -> 502，透传服务端 message
    - ValueError -> 400；“not found” 类 -> 404
    """
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, PermissionError):
        return HTTPException(status_code=403, detail=str(e) or "Forbidden")
    if isinstance(e, RpcError):
        return HTTPException(status_code=502, detail=e.message or "Upstream call failed")
    if isinstance(e, ValueError):
        message = str(e) or "Bad request"
        if "not found" in message.lower():
            return HTTPException(status_code=404, detail=message)
        return HTTPException(status_code=400, detail=message)
    logger.error("[API] unexpected error: %s", e, exc_info=True)
    return HTTPException(status_code=500, detail="Internal server error")
