"""
Pytest fixtures for API and service tests.

Provides in-memory fakes for the document/blob store and the hosted model clients.
"""

import io
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from openpyxl import Workbook

from margin_leakage.core.config import get_settings
from margin_leakage.core.dependencies import (
    get_analysis_service, get_combine_service, get_storage
)
from margin_leakage.core.exceptions import FileNotFoundInStoreError
from margin_leakage.data.file_processing import process_file_data
from margin_leakage.llm_analyzer import LLMResult
from margin_leakage.main import app
from margin_leakage.services.analysis_service import MarginAnalysisService
from margin_leakage.services.combine_service import CombineService

# =============================================================================
# SAMPLE DATA FIXTURES
# =============================================================================

SALES_CSV = """product_id,customer_id,list_price,net_price,cost,quantity,discount_pct
P001,C001,100,90,60,10,10
P002,C002,50,30,40,5,40
P003,C001,80,20,35,2,75
P004,C003,200,190,100,1,5
P005,C002,60,54,50,20,10
"""


@pytest.fixture
def sales_csv() -> bytes:
    """Five sales rows: P002 and P003 sell below cost, P005 has a thin margin."""
    return SALES_CSV.encode("utf-8")


@pytest.fixture
def sales_rows() -> tuple:
    return process_file_data(SALES_CSV.encode("utf-8"), "sales.csv", "text/csv")


def make_xlsx(rows: List[List[Any]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()


# =============================================================================
# FAKES
# =============================================================================

class FakeStorage:
    """In-memory stand-in for MongoStorage."""

    def __init__(self):
        self.blobs: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.analyses: List[Dict[str, Any]] = []
        self.runs: Dict[str, Dict[str, Any]] = {}

    def add_file(self, filename: str, data: bytes, user_id: str = "anonymous",
                 content_type: str = "text/csv", **metadata) -> str:
        meta = {"userId": user_id, "uploadedAt": datetime.now(timezone.utc), **metadata}
        return self.upload_file(filename, data, content_type, meta)

    def upload_file(self, filename, data, content_type, metadata):
        file_id = str(ObjectId())
        meta = dict(metadata)
        meta.setdefault("uploadedAt", datetime.now(timezone.utc))
        meta["contentType"] = content_type
        self.blobs[file_id] = {
            "id": file_id,
            "filename": filename,
            "uploadDate": datetime.now(timezone.utc),
            "length": len(data),
            "contentType": content_type,
            "metadata": meta,
            "data": data,
        }
        return file_id

    def _record(self, blob):
        return {k: v for k, v in blob.items() if k != "data"}

    def list_files(self, user_id):
        return [self._record(b) for b in self.blobs.values() if b["metadata"].get("userId") == user_id]

    def find_file(self, file_id, user_id):
        blob = self.blobs.get(file_id)
        if blob and blob["metadata"].get("userId") == user_id:
            return self._record(blob)
        return None

    def find_file_by_name(self, filename, user_id):
        for blob in reversed(list(self.blobs.values())):
            if blob["filename"] == filename and blob["metadata"].get("userId") == user_id:
                return self._record(blob)
        return None

    def find_file_any(self, identifier):
        blob = self.blobs.get(identifier)
        if blob is None:
            blob = next((b for b in self.blobs.values() if b["filename"] == identifier), None)
        return self._record(blob) if blob else None

    def download(self, file_id):
        if file_id not in self.blobs:
            raise FileNotFoundInStoreError("File not found", details=file_id)
        return self.blobs[file_id]["data"]

    def session_files(self, user_id, session_id, uploaded_before):
        matches = [
            self._record(b) for b in self.blobs.values()
            if b["metadata"].get("userId") == user_id
            and b["metadata"].get("sessionId") == session_id
            and not b["metadata"].get("isCombined")
            and b["metadata"]["uploadedAt"] <= uploaded_before
        ]
        return sorted(matches, key=lambda r: r["metadata"]["uploadedAt"], reverse=True)

    def find_combined_file(self, user_id, session_id, source_file_ids):
        for b in self.blobs.values():
            meta = b["metadata"]
            if (meta.get("userId") == user_id and meta.get("sessionId") == session_id
                    and meta.get("isCombined") and meta.get("sourceFileIds") == source_file_ids):
                return self._record(b)
        return None

    def upsert_session_metadata(self, session_id, metadata):
        self.sessions.setdefault(session_id, {"sessionId": session_id}).update(metadata)

    def get_session_metadata(self, session_id):
        return dict(self.sessions.get(session_id, {}))

    def upsert_analysis(self, collection, filter, fields):
        self.analyses.append({"collection": collection, "filter": dict(filter), "fields": dict(fields)})

    def create_run(self, run_id, file_id, user_id):
        self.runs[run_id] = {"runId": run_id, "fileId": file_id, "userId": user_id, "status": "created",
                             "createdAt": datetime.now(timezone.utc)}
        return dict(self.runs[run_id])

    def save_run(self, run_id, user_id, analysis):
        run = self.runs.setdefault(run_id, {"runId": run_id, "userId": user_id})
        run.update({"analysis": analysis, "status": "completed", "completedAt": datetime.now(timezone.utc)})

    def get_run(self, run_id, user_id):
        run = self.runs.get(run_id)
        if run and run.get("userId") == user_id:
            return dict(run)
        return None


class FakeLLM:
    """Scripted model client: returns queued replies in order, then ``default``."""

    def __init__(self, replies: Optional[List[Any]] = None, default: str = "", finish_reason: str = "stop"):
        self.replies = list(replies or [])
        self.default = default
        self.finish_reason = finish_reason
        self.prompts: List[str] = []
        self.calls: List[Dict[str, Any]] = []
        self.configured = True

    def queue(self, *replies):
        self.replies.extend(replies)

    def generate(self, prompt, model=None, **kwargs):
        self.prompts.append(prompt)
        self.calls.append({"model": model, **kwargs})
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return LLMResult(text=reply, usage={"total_tokens": 10}, finish_reason=self.finish_reason,
                         model=model, duration_ms=1)


# =============================================================================
# SERVICE / CLIENT FIXTURES
# =============================================================================

@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def vertex() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def openrouter() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def analysis_service(storage, vertex, openrouter) -> MarginAnalysisService:
    return MarginAnalysisService(storage, vertex, openrouter, get_settings())


@pytest.fixture
def combine_service(storage, openrouter) -> CombineService:
    return CombineService(storage, openrouter, get_settings())


@pytest.fixture
def client(storage, analysis_service, combine_service):
    """TestClient with every external dependency replaced by a fake."""
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_analysis_service] = lambda: analysis_service
    app.dependency_overrides[get_combine_service] = lambda: combine_service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sales_file_id(storage, sales_csv) -> str:
    return storage.add_file("sales.csv", sales_csv)
