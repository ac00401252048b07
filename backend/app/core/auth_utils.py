import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import app_config
from app.lib.api_client import supabase
from app.schemas.session import UserSession

logger = logging.getLogger("corpsreview.auth")

# === Auth 核心配置 ===
# 中文注释:
# 1. 密钥来源于 Supabase Project Settings 中的 JWT Secret。
# 2. 我们使用 HTTPBearer 作为验证头；token 原样保留在会话里，后续以该用户身份调用 RPC。
ALGORITHM = "HS256"

security = HTTPBearer()


def _session_from_token(token: str) -> UserSession:
    # 中文注释:
    # 1. Supabase 新版可能使用 JWT Signing Keys（非 HS256），需要走 Auth API 获取用户。
    # 2. 若仍为 HS256 且配置了密钥，则本地校验以减少外部请求。
    header = jwt.get_unverified_header(token)
    secret = app_config.jwt_secret
    if header.get("alg") == ALGORITHM and secret:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM], audience="authenticated")
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token payload")
        return UserSession(user_id=str(user_id), email=payload.get("email"), access_token=token)

    # fallback: 通过 Supabase Auth API 校验并获取用户信息
    try:
        response = supabase.auth.get_user(token)
        user = response.user if response else None
    except Exception as e:
        # 中文注释: 若 Supabase 配置缺失/网络异常，不应返回 500 泄露内部错误，统一视为鉴权失败
        logger.warning("[Auth] token fallback verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Token invalid or expired")

    if not user:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return UserSession(user_id=str(user.id), email=user.email, access_token=token)


async def get_current_session(credentials: HTTPAuthorizationCredentials = Depends(security)) -> UserSession:
    """
    解码并验证 Supabase JWT，返回显式传递的 UserSession
    """
    try:
        return _session_from_token(credentials.credentials)
    except JWTError as e:
        logger.info("[Auth] JWT verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Token invalid or expired")
