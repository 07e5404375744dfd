"""Spreadsheet upload route.

POST /api/upload stores the parsed first sheet as the user's document
context; later chat turns include it in the prompt.
"""
import logging

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from carechat.core.deps import get_chat_service, get_current_user
from carechat.models.user import User
from carechat.services.chat_service import ChatService
from carechat.services.spreadsheet import UnsupportedSpreadsheet, extract_records, records_to_text

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["upload"])


class UploadResponse(BaseModel):
    message: str
    summary: str


@router.post("/upload", response_model=UploadResponse)
def upload_file(
    file: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
) -> UploadResponse:
    """Parse an .xlsx/.csv upload and seed the user's document context."""
    data = file.file.read()
    try:
        records = extract_records(file.filename, data)
    except UnsupportedSpreadsheet as e:
        logger.warning(f"Rejected upload from user={current_user.id}: {e}")
        raise HTTPException(
            status_code=422,
            detail=str(e),
        )

    summary = chat_service.set_context(
        current_user.id, records_to_text(records), rows=len(records)
    )
    return UploadResponse(message="File processed successfully", summary=summary)
