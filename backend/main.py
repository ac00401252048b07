from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# 在应用启动前加载环境变量（app.core.config 在 import 时读取）
load_dotenv()

_SENTRY_ENABLED = False
try:
    from app.core.sentry_init import init_sentry

    _SENTRY_ENABLED = init_sentry()
    if _SENTRY_ENABLED:
        print("[sentry] enabled")
except Exception as e:
    # 中文注释: Sentry 任何异常都不得阻塞启动
    print(f"[sentry] init failed (ignored): {e}")

from app.api.v1 import applications, capabilities, queue, reviews
from app.api.v1.common import shutdown_runtime
from app.core.access_gate import UNAUTHORIZED_PATH, AccessDenied, access_denied_body
from app.core.config import app_config
from app.core.middleware import ExceptionHandlerMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # 中文注释: 关闭时取消所有去抖定时器、释放 realtime 订阅、停止能力轮询
    await shutdown_runtime()


app = FastAPI(
    title="CorpsReview API",
    description="Collaborative application review backend",
    version="1.0.0",
    lifespan=lifespan,
)

if _SENTRY_ENABLED:
    try:
        from sentry_sdk.integrations.asgi import SentryAsgiMiddleware

        app.add_middleware(SentryAsgiMiddleware)
    except Exception as e:
        print(f"[sentry] middleware attach failed (ignored): {e}")

# === 中间件配置 ===
# 1. CORS：只放行评审 UI 的 origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(app_config.frontend_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

# 2. 统一异常处理 + 请求日志
app.add_middleware(ExceptionHandlerMiddleware)


@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    return JSONResponse(status_code=403, content=access_denied_body(exc))


# === 路由注册 ===
for router in (reviews.router, queue.router, capabilities.router, applications.router):
    app.include_router(router, prefix="/api/v1")


@app.get(UNAUTHORIZED_PATH)
async def unauthorized():
    return JSONResponse(
        status_code=403,
        content={"detail": "You do not have access to this page", "type": "unauthorized"},
    )


@app.get("/")
async def root():
    return {"message": "CorpsReview API is running", "docs": "/docs"}
