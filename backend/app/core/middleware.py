import time
import logging
from uuid import uuid4

from fastapi import Request, HTTPException
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.lib.rpc_gateway import RpcError
from app.schemas.review import MalformedPayloadError

# === 结构化日志配置 ===
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("corpsreview.http")

REQUEST_ID_HEADER = "X-Request-ID"


def _error(status_code: int, detail: str, kind: str, request_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "type": kind},
        headers={REQUEST_ID_HEADER: request_id},
    )


class ExceptionHandlerMiddleware(BaseHTTPMiddleware):
    """
    统一异常捕获中间件：请求日志（带 request id）+ 兜底错误映射。

    中文注释:
    - 路由层已经把已知异常转换为 HTTPException；这里只兜住“漏网”的领域异常。
    - RpcError 视为上游失败（502），消息原样透出；其它未知异常一律 500，不泄漏细节。
    """

    async def dispatch(self, request: Request, call_next):
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or uuid4().hex[:12]
        start_time = time.time()
        try:
            response = await call_next(request)
        except HTTPException as exc:
            return _error(exc.status_code, exc.detail, "http_exception", request_id)
        except RpcError as e:
            logger.warning("[%s] upstream %s failed: %s", request_id, e.procedure or "rpc", e.message)
            return _error(502, e.message, "upstream_error", request_id)
        except MalformedPayloadError as e:
            return _error(400, str(e), "malformed_payload", request_id)
        except PermissionError as e:
            return _error(403, str(e) or "Forbidden", "forbidden", request_id)
        except Exception as e:
            logger.error("[%s] Unhandled Exception: %s", request_id, e, exc_info=True)
            return _error(500, "Internal server error", "server_error", request_id)

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "[%s] %s %s -> %s (%.4fs)",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            time.time() - start_time,
        )
        return response
