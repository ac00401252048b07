from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Optional

from app.lib.rpc_gateway import RpcGateway
from app.schemas.application import AnswerError, ApplicationRow, ApplicationSchema, AppField
from app.schemas.review import LabelledAnswer, MalformedPayloadError

logger = logging.getLogger("corpsreview.applications")

# 申请状态只会单向推进：draft -> submitted -> reviewing -> 终态
_STATUS_RANK = {
    "draft": 0,
    "submitted": 1,
    "reviewing": 2,
    "accepted": 3,
    "rejected": 3,
    "waitlisted": 3,
}


def _snake(label: str) -> str:
    return re.sub(r"\s+", "_", (label or "").strip().lower())


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _word_count(text: str) -> int:
    return len([w for w in re.split(r"\s+", text.strip()) if w])


def answer_for(field: AppField, answers: dict[str, Any]) -> Any:
    # 中文注释: 历史答案可能按 id、label 或 snake_case(label) 存储，依次回退。
    for key in (field.id, field.label, _snake(field.label)):
        if key and key in answers:
            return answers[key]
    return None


def label_answers(schema: ApplicationSchema, answers: dict[str, Any]) -> list[LabelledAnswer]:
    if not schema.fields:
        return [
            LabelledAnswer(field_id=str(k), label=str(k), type="unknown", value=v)
            for k, v in (answers or {}).items()
        ]
    return [
        LabelledAnswer(
            field_id=f.id,
            label=f.label or f.id,
            type=f.type,
            value=answer_for(f, answers or {}),
        )
        for f in schema.fields
    ]


def _validate_field(field: AppField, value: Any) -> Optional[str]:
    if field.type in ("short_text", "long_text"):
        if not isinstance(value, str):
            return "Must be text"
        if field.max_length is not None and len(value) > field.max_length:
            return f"Must be at most {field.max_length} characters"
        if field.max_words is not None and _word_count(value) > field.max_words:
            return f"Must be at most {field.max_words} words"
    elif field.type == "select":
        if field.options and str(value) not in field.options:
            return "Must be one of the listed options"
    elif field.type == "checkbox":
        if not isinstance(value, bool):
            return "Must be true or false"
    elif field.type == "date":
        try:
            date.fromisoformat(str(value))
        except ValueError:
            return "Must be a date (YYYY-MM-DD)"
    return None


def validate_answers(
    schema: ApplicationSchema,
    answers: dict[str, Any],
    *,
    for_submit: bool,
) -> list[AnswerError]:
    """
    按 schema 校验答案。草稿保存只校验已填写字段；提交时额外校验必填项。
    """
    errors: list[AnswerError] = []
    for f in schema.fields:
        value = answer_for(f, answers)
        if _is_blank(value):
            if for_submit and f.required:
                errors.append(AnswerError(field_id=f.id, message="This field is required"))
            continue
        if f.type == "file":
            continue
        message = _validate_field(f, value)
        if message:
            errors.append(AnswerError(field_id=f.id, message=message))
        elif f.type == "checkbox" and for_submit and f.required and value is not True:
            # 必填勾选框（如条款确认）必须勾选
            errors.append(AnswerError(field_id=f.id, message="This field is required"))
    return errors


class AnswerValidationError(ValueError):
    def __init__(self, errors: list[AnswerError]):
        super().__init__("; ".join(f"{e.field_id}: {e.message}" for e in errors))
        self.errors = errors


class ApplicationService:
    """
    申请人侧：开始/获取申请、保存草稿、提交。状态流转由服务端 RPC 决定，客户端从不降级状态。
    """

    def __init__(self, gateway: RpcGateway):
        self.gateway = gateway

    def _schema_for(self, program_id: Optional[str]) -> ApplicationSchema:
        if not program_id:
            return ApplicationSchema()
        try:
            return ApplicationSchema.from_payload(self.gateway.get_program_schema(program_id))
        except MalformedPayloadError as e:
            logger.warning("[Applications] ignoring malformed schema (program_id=%s): %s", program_id, e)
            return ApplicationSchema()

    def start(self, program_id: str) -> ApplicationRow:
        row = self.gateway.start_or_get_application(program_id)
        if not row:
            raise ValueError("Application not found")
        return ApplicationRow.model_validate(row)

    def get(self, application_id: str) -> ApplicationRow:
        row = self.gateway.get_application(application_id)
        if not row:
            raise ValueError("Application not found")
        return ApplicationRow.model_validate(row)

    def save_draft(self, application_id: str, answers: dict[str, Any]) -> ApplicationRow:
        current = self.get(application_id)
        if current.status != "draft":
            raise PermissionError("Application has already been submitted")
        schema = self._schema_for(str(current.program_id) if current.program_id else None)
        errors = validate_answers(schema, answers, for_submit=False)
        if errors:
            raise AnswerValidationError(errors)
        saved = self.gateway.save_application(application_id, answers)
        return ApplicationRow.model_validate(saved) if saved else current.model_copy(update={"answers": answers})

    def submit(self, application_id: str, answers: dict[str, Any]) -> ApplicationRow:
        current = self.get(application_id)
        if _STATUS_RANK.get(current.status, 0) >= _STATUS_RANK["submitted"]:
            # 已提交：不重复提交，也绝不回退状态
            return current
        schema = self._schema_for(str(current.program_id) if current.program_id else None)
        errors = validate_answers(schema, answers, for_submit=True)
        if errors:
            raise AnswerValidationError(errors)
        saved = self.gateway.submit_application(application_id, answers)
        if not saved:
            return current.model_copy(update={"answers": answers, "status": "submitted"})
        return ApplicationRow.model_validate(saved)
