"""
Ingestion endpoints for already-normalized webhook payloads.
"""

from __future__ import annotations

from fastapi import APIRouter, Body
from fastapi.responses import JSONResponse

from prime_memory.services import memory_service


router = APIRouter(prefix="/ingest")

_STATUS_BY_ERROR = {
    "validation_error": 422,
    "not_found": 404,
    "internal_error": 500,
}


def _respond(result: dict) -> JSONResponse:
    status_code = 200 if result.get("success") else _STATUS_BY_ERROR.get(result.get("error_type"), 500)
    return JSONResponse(status_code=status_code, content=result)


@router.post("/email")
def ingest_email(payload: dict = Body(...)):
    return _respond(memory_service.ingest_email(payload=payload))


@router.post("/calendar")
def ingest_calendar_event(payload: dict = Body(...)):
    return _respond(memory_service.ingest_calendar_event(payload=payload))


@router.post("/slack")
def ingest_slack_message(payload: dict = Body(...)):
    return _respond(memory_service.ingest_slack_message(payload=payload))
