# margin_leakage/api/files.py
"""Upload, file listing and session preference endpoints."""

import json
from typing import Optional

from fastapi import APIRouter, UploadFile, File, Form, HTTPException, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from ..core.config import get_settings, Settings
from ..core.dependencies import get_storage, get_user_id, validate_file_upload
from ..core.exceptions import FileNotFoundInStoreError, FileProcessingError
from ..data.file_processing import guess_content_type, process_file_data, sheet_name_for
from ..models.analysis import FileSummary, UploadResponse
from ..services.storage import MongoStorage, is_valid_id, utcnow

router = APIRouter(prefix="/api", tags=["files"])

@router.post("/upload", response_model=UploadResponse)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    sessionId: Optional[str] = Form(None),
    user_id: str = Depends(get_user_id),
    storage: MongoStorage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    """Store a spreadsheet in the blob store under the caller's session."""
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if not sessionId:
        raise HTTPException(status_code=400, detail="Session ID is required")

    content = await file.read()
    validate_file_upload(content, file.filename, settings)

    content_type = file.content_type or guess_content_type(file.filename)
    file_id = await run_in_threadpool(
        storage.upload_file,
        file.filename,
        content,
        content_type,
        {"userId": user_id, "uploadedAt": utcnow(), "sessionId": sessionId},
    )
    print(f"📤 Uploaded {file.filename} ({len(content):,} bytes) as {file_id}")
    return UploadResponse(
        message="File uploaded successfully",
        fileId=file_id,
        filename=file.filename,
        sessionId=sessionId,
    )

@router.get("/files")
def get_files(
    id: Optional[str] = Query(None),
    user_id: str = Depends(get_user_id),
    storage: MongoStorage = Depends(get_storage),
):
    """List the caller's files, or return the parsed contents of one file."""
    if id is None:
        files = storage.list_files(user_id)
        return [FileSummary(**f).model_dump(mode="json") for f in files]

    if not is_valid_id(id):
        raise FileProcessingError("Invalid file id")
    record = storage.find_file(id, user_id)
    if not record:
        raise FileNotFoundInStoreError("File not found or access denied", details=id)

    columns, rows = process_file_data(storage.download(record["id"]), record["filename"] or "", record.get("contentType"))
    result = {
        "sheetName": sheet_name_for(record["filename"]),
        "columns": columns,
        "data": rows,
    }
    if not rows:
        result["warning"] = "File contains no data"
    return result

@router.post("/session")
async def save_session(request: Request, storage: MongoStorage = Depends(get_storage)):
    """Upsert combine preferences (combineData, joinType, customPrompt) for a session."""
    raw = await request.body()
    if not raw:
        raise HTTPException(status_code=400, detail="Request body is empty")
    try:
        body = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(body, dict) or not body.get("sessionId"):
        raise HTTPException(status_code=400, detail="Session ID is required")

    metadata = body.get("metadata") or {}
    fields = {key: metadata.get(key) for key in ("combineData", "joinType", "customPrompt") if key in metadata}
    await run_in_threadpool(storage.upsert_session_metadata, body["sessionId"], fields)
    return {"success": True}
