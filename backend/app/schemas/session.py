from __future__ import annotations

from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class UserSession(BaseModel):
    """
    显式传递的会话上下文（替代前端的全局 context）。

    中文注释:
    - access_token 用于构造“以当前用户身份”的 Supabase client，RLS 由服务端判定。
    - origin_id 只用于在日志里关联同一会话的请求；realtime 自我回声靠 updated_at 时间戳识别。
    """

    user_id: str
    email: Optional[str] = None
    access_token: str
    origin_id: str = Field(default_factory=lambda: uuid4().hex)
