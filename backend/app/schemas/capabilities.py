from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


SUPER_ROLES = {"admin", "superadmin"}
CAPABILITY_ROLES = {"admin", "reviewer", "coalition_manager", "superadmin"}


class OrgMini(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    slug: str = ""


class CoalitionMini(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    slug: str = ""


class ProgramMini(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    organization_slug: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _program_id(cls, data: Any) -> Any:
        # my_reviewer_programs_v2 返回 program_id，旧版返回 id
        if isinstance(data, dict) and not data.get("id") and data.get("program_id"):
            data = {**data, "id": data["program_id"]}
        return data


class Capabilities(BaseModel):
    """
    按会话推导的能力集合（不落库），用于导航与路由门禁。
    """

    admin_orgs: list[OrgMini] = Field(default_factory=list)
    reviewer_programs: list[ProgramMini] = Field(default_factory=list)
    coalitions: list[CoalitionMini] = Field(default_factory=list)
    user_role: Optional[str] = None

    @property
    def has_reviewer_assignments(self) -> bool:
        return len(self.reviewer_programs) > 0

    @property
    def is_org_admin(self) -> bool:
        return len(self.admin_orgs) > 0

    @property
    def is_super_admin(self) -> bool:
        return (self.user_role or "") in SUPER_ROLES

    def has_any_capabilities(self) -> bool:
        if self.admin_orgs or self.reviewer_programs or self.coalitions:
            return True
        return (self.user_role or "") in CAPABILITY_ROLES


class CapabilitiesView(BaseModel):
    capabilities: Capabilities
    has_reviewer_assignments: bool
    is_org_admin: bool
    is_super_admin: bool
    has_any_capabilities: bool

    @classmethod
    def of(cls, caps: Capabilities) -> "CapabilitiesView":
        return cls(
            capabilities=caps,
            has_reviewer_assignments=caps.has_reviewer_assignments,
            is_org_admin=caps.is_org_admin,
            is_super_admin=caps.is_super_admin,
            has_any_capabilities=caps.has_any_capabilities(),
        )
