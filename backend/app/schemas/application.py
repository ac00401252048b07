from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.schemas.review import ApplicationStatus, MalformedPayloadError


FieldType = Literal["short_text", "long_text", "date", "select", "checkbox", "file"]


class AppField(BaseModel):
    """
    表单字段定义。

    中文注释:
    - 新版 builder 用 `key`，旧版用 `id`，两者都接受；缺省时回退到 label。
    - type 历史上有大写（SHORT_TEXT），统一转小写。
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    label: str = ""
    type: FieldType
    required: bool = False
    options: list[str] = Field(default_factory=list)
    max_length: Optional[int] = Field(default=None, alias="maxLength")
    max_words: Optional[int] = Field(default=None, alias="maxWords")

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out = dict(data)
        field_id = out.get("id") or out.get("key") or out.get("label")
        if field_id is not None:
            out["id"] = str(field_id)
        if isinstance(out.get("type"), str):
            out["type"] = out["type"].strip().lower()
        return out


class ApplicationSchema(BaseModel):
    """
    每个 program 一份、只读的表单 schema；review 流程只用它来给答案打标签。
    """

    fields: list[AppField] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Any) -> "ApplicationSchema":
        if not raw:
            return cls()
        if not isinstance(raw, dict):
            raise MalformedPayloadError("Application schema must be an object.")
        items = raw.get("fields")
        if items is None:
            # 兼容旧版 { items: [...] } 结构
            items = raw.get("items") or []
        try:
            return cls.model_validate({"fields": items})
        except ValidationError as e:
            raise MalformedPayloadError(f"Malformed application schema: {e.errors()[0].get('msg')}") from e

    def field_by_id(self, field_id: str) -> Optional[AppField]:
        for f in self.fields:
            if f.id == field_id:
                return f
        return None


class ApplicationRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: UUID
    program_id: Optional[UUID] = None
    user_id: Optional[str] = None
    status: ApplicationStatus = "draft"
    answers: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("answers", mode="before")
    @classmethod
    def _answers(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}


class AnswersPayload(BaseModel):
    answers: dict[str, Any] = Field(default_factory=dict)


class AnswerError(BaseModel):
    field_id: str
    message: str
