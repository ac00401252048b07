from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


ReviewStatus = Literal["draft", "submitted"]
ServerReviewStatus = Literal["draft", "submitted", "not_started"]
SaveStatus = Literal["idle", "saving", "saved", "error"]
ApplicationStatus = Literal["draft", "submitted", "reviewing", "accepted", "rejected", "waitlisted"]
ChangeType = Literal["INSERT", "UPDATE", "DELETE"]

RatingValue = Union[bool, int, float, str, None]
Ratings = dict[str, RatingValue]

NO_REVIEWER_LABEL = "No reviewer assigned"
DECISION_KEY = "decision"


class MalformedPayloadError(ValueError):
    """
    边界处的 JSON 载荷不合法（ratings / realtime 事件 / schema）。

    中文注释: 不再“猜测”形状，解析失败统一抛出该异常，由调用方决定丢弃还是提示。
    """


def parse_ratings(raw: Any) -> Ratings:
    """
    ratings 必须是扁平的 key -> 标量 映射；字符串形式的 JSON 先解码。
    """
    if raw is None:
        return {}
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return {}
        try:
            raw = json.loads(text)
        except ValueError as e:
            raise MalformedPayloadError("Ratings must be valid JSON.") from e
    if not isinstance(raw, dict):
        raise MalformedPayloadError("Ratings must be a JSON object.")
    out: Ratings = {}
    for k, v in raw.items():
        if v is not None and not isinstance(v, (bool, int, float, str)):
            raise MalformedPayloadError(f"Rating '{k}' must be a scalar value.")
        out[str(k)] = v
    return out


def _coerce_score(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValueError("score must be an integer")
    if isinstance(raw, float):
        if not raw.is_integer():
            raise ValueError("score must be an integer")
        return int(raw)
    if isinstance(raw, str):
        return int(raw.strip())
    return int(raw)


class ReviewRow(BaseModel):
    """服务端 application_reviews 行（字段均可缺省，RPC 与直查返回的列不完全一致）"""

    model_config = ConfigDict(extra="ignore")

    id: Optional[UUID] = None
    application_id: Optional[UUID] = None
    reviewer_id: Optional[str] = None
    reviewer_name: Optional[str] = None
    score: Optional[int] = None
    comments: Optional[str] = None
    ratings: Optional[Ratings] = None
    decision: Optional[str] = None
    status: Optional[ServerReviewStatus] = None
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, v: Any) -> Optional[int]:
        return _coerce_score(v)

    @field_validator("ratings", mode="before")
    @classmethod
    def _ratings(cls, v: Any) -> Optional[Ratings]:
        if v is None:
            return None
        try:
            return parse_ratings(v)
        except MalformedPayloadError as e:
            raise ValueError(str(e)) from e

    @field_validator("reviewer_id", mode="before")
    @classmethod
    def _reviewer_id(cls, v: Any) -> Optional[str]:
        text = str(v or "").strip()
        return text or None

    @classmethod
    def from_payload(cls, raw: Any) -> Optional["ReviewRow"]:
        if raw is None:
            return None
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise MalformedPayloadError("Review row is not valid JSON.") from e
        if not isinstance(raw, dict):
            raise MalformedPayloadError("Review row must be an object.")
        if not raw:
            return None
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise MalformedPayloadError(f"Malformed review row: {e.errors()[0].get('msg')}") from e


class ReviewState(BaseModel):
    """评审页内存态：服务端行 + 本地未保存编辑 的合并视图"""

    application_id: UUID
    id: Optional[UUID] = None
    reviewer_id: Optional[str] = None
    reviewer_name: Optional[str] = None
    score: Optional[int] = None
    comments: str = ""
    ratings: Ratings = Field(default_factory=dict)
    status: ReviewStatus = "draft"
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def decision(self) -> Optional[str]:
        value = self.ratings.get(DECISION_KEY)
        return str(value) if value not in (None, "") else None

    def has_content(self) -> bool:
        return (
            self.score is not None
            or bool(self.comments.strip())
            or bool(self.ratings)
        )


class ReviewBundle(BaseModel):
    """review_get_v1 的返回：申请答案 + schema + 共享评审行"""

    application_id: UUID
    program_id: Optional[UUID] = None
    applicant_answers: dict[str, Any] = Field(default_factory=dict)
    application_schema: dict[str, Any] = Field(default_factory=dict)
    review: Optional[ReviewRow] = None

    @field_validator("applicant_answers", "application_schema", mode="before")
    @classmethod
    def _json_object(cls, v: Any) -> dict[str, Any]:
        if v is None:
            return {}
        if isinstance(v, str):
            try:
                v = json.loads(v) if v.strip() else {}
            except ValueError as e:
                raise ValueError("must be a JSON object") from e
        if not isinstance(v, dict):
            raise ValueError("must be a JSON object")
        return v

    @field_validator("review", mode="before")
    @classmethod
    def _review(cls, v: Any) -> Any:
        if v in (None, {}, "null"):
            return None
        return v


class DraftSnapshot(BaseModel):
    score: Optional[int] = None
    comments: str = ""
    ratings: Ratings = Field(default_factory=dict)
    saved_at: Optional[datetime] = None

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, v: Any) -> Optional[int]:
        return _coerce_score(v)

    @field_validator("comments", mode="before")
    @classmethod
    def _comments(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("ratings", mode="before")
    @classmethod
    def _ratings(cls, v: Any) -> Ratings:
        try:
            return parse_ratings(v)
        except MalformedPayloadError as e:
            raise ValueError(str(e)) from e

    def has_content(self) -> bool:
        return self.score is not None or bool(self.comments.strip()) or bool(self.ratings)


class ReviewChangeEvent(BaseModel):
    """postgres_changes 推送（已校验）"""

    model_config = ConfigDict(extra="ignore")

    type: ChangeType
    table: str = ""
    record: dict[str, Any] = Field(default_factory=dict)
    old_record: dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[datetime] = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper(cls, v: Any) -> str:
        return str(v or "").strip().upper()

    @field_validator("record", "old_record", mode="before")
    @classmethod
    def _obj(cls, v: Any) -> dict[str, Any]:
        return v if isinstance(v, dict) else {}

    def field(self, name: str) -> Any:
        if name in self.record:
            return self.record.get(name)
        return self.old_record.get(name)

    @classmethod
    def from_payload(cls, payload: Any) -> "ReviewChangeEvent":
        # 中文注释: realtime-py 回调的载荷可能是 {"data": {...}} 或直接是 {...}，两种都接受。
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Realtime payload must be an object.")
        body = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        normalized = dict(body)
        if "type" not in normalized and "eventType" in normalized:
            normalized["type"] = normalized.get("eventType")
        if "record" not in normalized and "new" in normalized:
            normalized["record"] = normalized.get("new")
        if "old_record" not in normalized and "old" in normalized:
            normalized["old_record"] = normalized.get("old")
        try:
            return cls.model_validate(normalized)
        except ValidationError as e:
            raise MalformedPayloadError(f"Malformed realtime payload: {e.errors()[0].get('msg')}") from e


class ProgramReviewForm(BaseModel):
    model_config = ConfigDict(extra="ignore")

    show_score: bool = True
    show_comments: bool = True
    show_decision: bool = False
    decision_options: list[str] = Field(default_factory=lambda: ["accept", "waitlist", "reject"])


class ReviewEdit(BaseModel):
    """PATCH 请求体：只应用显式给出的字段（model_fields_set）"""

    score: Optional[int] = None
    comments: Optional[str] = Field(default=None, max_length=20000)
    ratings: Optional[Ratings] = None
    ratings_json: Optional[str] = None
    decision: Optional[str] = None


class UnlockPayload(BaseModel):
    confirm: bool = False


class LabelledAnswer(BaseModel):
    field_id: str
    label: str
    type: str
    value: Any = None


class ReviewView(BaseModel):
    application_id: UUID
    loading: bool
    save_status: SaveStatus
    error: Optional[str] = None
    review: ReviewState
    is_read_only: bool
    unlocked: bool = False
    unsaved_changes: bool = False
    last_edited: Optional[str] = None
    answers: list[LabelledAnswer] = Field(default_factory=list)
    raw_answers: dict[str, Any] = Field(default_factory=dict)


class QueueRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    review_id: str
    application_id: UUID
    status: ServerReviewStatus
    score: Optional[int] = None
    updated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    comments: Optional[str] = None
    ratings: Optional[Ratings] = None
    reviewer_id: Optional[str] = None
    reviewer_name: str = NO_REVIEWER_LABEL
    applicant_id: Optional[str] = None
    applicant_name: Optional[str] = None
    program_id: Optional[UUID] = None
    program_name: Optional[str] = None
    org_id: Optional[str] = None
    org_name: Optional[str] = None

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, v: Any) -> Optional[int]:
        return _coerce_score(v)


class ApplicantQueueItem(BaseModel):
    """app_list_review_queue_v1 的一行：等待评审的申请"""

    model_config = ConfigDict(extra="ignore")

    application_id: UUID
    program_id: Optional[UUID] = None
    program_name: Optional[str] = None
    applicant_id: Optional[str] = None
    applicant_name: Optional[str] = None
    status: ApplicationStatus = "submitted"
    submitted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ReviewerListItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    application_id: UUID
    program_id: Optional[UUID] = None
    applicant_id: Optional[str] = None
    application_status: Optional[ApplicationStatus] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    my_review_status: Literal["none", "draft", "submitted"] = "none"
    my_score: Optional[int] = None
