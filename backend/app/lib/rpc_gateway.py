from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from postgrest.exceptions import APIError

from app.lib.api_client import create_user_supabase_client
from app.schemas.review import Ratings, ReviewStatus
from app.schemas.session import UserSession

logger = logging.getLogger("corpsreview.gateway")


class RpcError(RuntimeError):
    """
    远程过程调用失败；message 为服务端返回的原始信息。

    中文注释: 网关不区分“暂时性失败”与“永久拒绝”，也不重试，交给调用方决定如何展示。
    """

    def __init__(self, message: str, *, procedure: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.procedure = procedure
        self.code = code


def _error_message(err: Exception) -> tuple[str, Optional[str]]:
    if isinstance(err, APIError):
        return (err.message or str(err)), err.code
    return (str(err) or err.__class__.__name__), None


class RpcGateway:
    """
    远程过程网关：每个方法调用一个具名 RPC（或一次简单表查询），返回解码后的数据或抛出 RpcError。

    - 无重试、无超时策略、无批处理
    - 不修改任何本地缓存
    """

    def __init__(self, client: Any):
        self.client = client

    @classmethod
    def for_session(cls, session: UserSession) -> "RpcGateway":
        return cls(create_user_supabase_client(session.access_token))

    # --- 基础调用 ---

    def call(self, procedure: str, params: Optional[dict[str, Any]] = None) -> Any:
        try:
            resp = self.client.rpc(procedure, params or {}).execute()
        except Exception as e:
            message, code = _error_message(e)
            logger.warning("[Gateway] rpc %s failed: %s", procedure, message)
            raise RpcError(message, procedure=procedure, code=code) from e
        return getattr(resp, "data", None)

    def _query(self, label: str, build) -> Any:
        try:
            resp = build().execute()
        except Exception as e:
            message, code = _error_message(e)
            logger.warning("[Gateway] query %s failed: %s", label, message)
            raise RpcError(message, procedure=label, code=code) from e
        return getattr(resp, "data", None)

    # --- 评审 ---

    def fetch_review_bundle(self, application_id: str) -> Optional[dict[str, Any]]:
        data = self.call("review_get_v1", {"p_application_id": str(application_id)})
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    def upsert_review(
        self,
        *,
        application_id: str,
        ratings: Optional[Ratings],
        score: Optional[int],
        comments: Optional[str],
        status: Optional[ReviewStatus],
        decision: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        # 中文注释: status=None 表示保持服务端当前状态（草稿自动保存）；"submitted" 为终态提交。
        params = {
            "p_application_id": str(application_id),
            "p_score": score if isinstance(score, int) and not isinstance(score, bool) else None,
            "p_comments": comments,
            "p_ratings": dict(ratings or {}),
            "p_status": status,
            "p_decision": decision,
        }
        data = self.call("app_upsert_review_v1", params)
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    def list_review_queue(self, program_id: str, status_filter: Optional[str] = None) -> list[dict[str, Any]]:
        data = self.call(
            "app_list_review_queue_v1",
            {"p_program_id": str(program_id), "p_status_filter": status_filter},
        )
        return list(data or [])

    def list_reviewer_applications(self, program_id: str, status: Optional[str] = None) -> list[dict[str, Any]]:
        data = self.call(
            "reviewer_list_applications_v1",
            {"p_program_id": str(program_id), "p_status": status},
        )
        return list(data or [])

    def list_program_reviews(self, program_id: str, *, limit: int = 1000) -> list[dict[str, Any]]:
        data = self.call(
            "reviews_list_v1",
            {
                "p_mine_only": False,
                "p_status": None,
                "p_program_id": str(program_id),
                "p_org_id": None,
                "p_limit": limit,
                "p_offset": 0,
            },
        )
        return list(data or [])

    def list_submitted_applications(self, program_id: str) -> list[dict[str, Any]]:
        data = self._query(
            "applications.submitted",
            lambda: self.client.table("applications")
            .select("id,program_id,user_id,status,created_at,updated_at,programs!inner(name,organization_id,organizations(name))")
            .eq("status", "submitted")
            .eq("program_id", str(program_id)),
        )
        return list(data or [])

    def get_program_review_form(self, program_id: str) -> Optional[dict[str, Any]]:
        data = self.call("get_program_review_form", {"p_program_id": str(program_id)})
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    # --- 直查（review_get_v1 失败时的降级路径） ---

    def load_application(self, application_id: str) -> Optional[dict[str, Any]]:
        return self._query(
            "applications",
            lambda: self.client.table("applications")
            .select("id,answers,program_id,status")
            .eq("id", str(application_id))
            .single(),
        )

    def load_review_row(self, application_id: str) -> Optional[dict[str, Any]]:
        data = self._query(
            "application_reviews",
            lambda: self.client.table("application_reviews")
            .select("*")
            .eq("application_id", str(application_id))
            .order("updated_at", desc=True)
            .limit(1),
        )
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    def get_program_schema(self, program_id: str) -> dict[str, Any]:
        data = self._query(
            "programs_public",
            lambda: self.client.table("programs_public")
            .select("application_schema")
            .eq("id", str(program_id))
            .single(),
        )
        return (data or {}).get("application_schema") or {}

    def get_profile_name(self, user_id: str) -> Optional[str]:
        data = self._query(
            "profiles.full_name",
            lambda: self.client.table("profiles").select("full_name").eq("id", str(user_id)).single(),
        )
        name = str((data or {}).get("full_name") or "").strip()
        return name or None

    # --- 能力 / 权限 ---

    def my_admin_orgs(self) -> list[dict[str, Any]]:
        return list(self.call("my_admin_orgs_v1") or [])

    def my_reviewer_programs(self) -> list[dict[str, Any]]:
        return list(self.call("my_reviewer_programs_v2") or [])

    def my_reviewer_orgs(self) -> list[dict[str, Any]]:
        return list(self.call("my_reviewer_orgs_v1") or [])

    def my_coalitions(self) -> list[dict[str, Any]]:
        return list(self.call("my_coalitions_v1") or [])

    def get_user_role(self, user_id: str) -> Optional[dict[str, Any]]:
        return self._query(
            "profiles.role",
            lambda: self.client.table("profiles").select("role,deleted_at").eq("id", str(user_id)).single(),
        )

    def filter_live_programs(self, program_ids: Iterable[str]) -> set[str]:
        ids = sorted({str(x) for x in program_ids if str(x or "").strip()})
        if not ids:
            return set()
        data = self._query(
            "programs.live",
            lambda: self.client.table("programs").select("id").in_("id", ids).is_("deleted_at", "null"),
        )
        return {str(row.get("id")) for row in (data or []) if row.get("id")}

    # --- 申请人 ---

    def start_or_get_application(self, program_id: str) -> Optional[dict[str, Any]]:
        return self.call("app_start_or_get_application_v1", {"p_program_id": str(program_id)})

    def get_application(self, application_id: str) -> Optional[dict[str, Any]]:
        return self.call("app_get_application_v1", {"p_application_id": str(application_id)})

    def save_application(self, application_id: str, answers: dict[str, Any]) -> Optional[dict[str, Any]]:
        return self.call(
            "app_save_application_v1",
            {"p_application_id": str(application_id), "p_answers": answers or {}},
        )

    def submit_application(self, application_id: str, answers: dict[str, Any]) -> Optional[dict[str, Any]]:
        return self.call(
            "app_submit_application_v1",
            {"p_application_id": str(application_id), "p_answers": answers or {}},
        )
