import asyncio

from fastapi import APIRouter, Body, Depends, HTTPException

from app.api.v1.common import http_error
from app.core.access_gate import get_gateway
from app.lib.rpc_gateway import RpcGateway
from app.schemas.application import AnswersPayload, ApplicationRow
from app.services.application_service import AnswerValidationError, ApplicationService

router = APIRouter(tags=["Applications"])


def get_application_service(gateway: RpcGateway = Depends(get_gateway)) -> ApplicationService:
    return ApplicationService(gateway)


def _row(row: ApplicationRow) -> dict:
    return {"success": True, "data": row.model_dump(mode="json")}


async def _run(fn, *args):
    try:
        return await asyncio.to_thread(fn, *args)
    except AnswerValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"message": "Invalid answers", "errors": [err.model_dump() for err in e.errors]},
        )
    except Exception as e:
        raise http_error(e)


@router.post("/programs/{program_id}/applications")
async def start_application(
    program_id: str,
    service: ApplicationService = Depends(get_application_service),
):
    """
    开始（或取回已有的）申请草稿
    """
    return _row(await _run(service.start, program_id))


@router.get("/applications/{application_id}")
async def get_application(
    application_id: str,
    service: ApplicationService = Depends(get_application_service),
):
    return _row(await _run(service.get, application_id))


@router.put("/applications/{application_id}")
async def save_application(
    application_id: str,
    payload: AnswersPayload = Body(...),
    service: ApplicationService = Depends(get_application_service),
):
    return _row(await _run(service.save_draft, application_id, payload.answers))


@router.post("/applications/{application_id}/submit")
async def submit_application(
    application_id: str,
    payload: AnswersPayload = Body(...),
    service: ApplicationService = Depends(get_application_service),
):
    """
    提交申请；已提交的申请原样返回，状态不会回退
    """
    return _row(await _run(service.submit, application_id, payload.answers))
