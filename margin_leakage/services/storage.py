# margin_leakage/services/storage.py
"""MongoDB document store and GridFS blob store for uploaded files and analysis results."""

import io
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import gridfs
from gridfs.errors import NoFile
from bson import ObjectId
from pymongo import MongoClient, DESCENDING

from ..core.config import Settings
from ..core.exceptions import FileNotFoundInStoreError

SESSION_COLLECTION = "sessionMetadata"
ANALYSES_COLLECTION = "analyses"
PRICING_COLLECTION = "pricingAnalyses"
RUNS_COLLECTION = "margin_analyses"

def is_valid_id(value: Any) -> bool:
    """True when ``value`` is a well-formed ObjectId string."""
    return isinstance(value, str) and ObjectId.is_valid(value)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def _file_record(doc: Dict[str, Any]) -> Dict[str, Any]:
    meta = doc.get("metadata") or {}
    return {
        "id": str(doc["_id"]),
        "filename": doc.get("filename"),
        "uploadDate": doc.get("uploadDate"),
        "length": doc.get("length", 0),
        "contentType": meta.get("contentType") or doc.get("contentType"),
        "metadata": meta,
    }

class MongoStorage:
    """Persistence for files (GridFS bucket), session preferences, step analyses and runs."""

    def __init__(self, settings: Settings, client: Optional[MongoClient] = None):
        self.client = client or MongoClient(settings.mongodb_uri, serverSelectionTimeoutMS=5000)
        self.db = self.client[settings.mongodb_db]
        self.bucket = gridfs.GridFSBucket(self.db, bucket_name=settings.mongodb_bucket)
        self.files = self.db[f"{settings.mongodb_bucket}.files"]
        print(f"🗄️  MongoDB storage ready: {settings.mongodb_db} (bucket: {settings.mongodb_bucket})")

    def close(self):
        self.client.close()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def upload_file(self, filename: str, data: bytes, content_type: str, metadata: Dict[str, Any]) -> str:
        meta = dict(metadata)
        meta.setdefault("uploadedAt", utcnow())
        meta["contentType"] = content_type
        file_id = self.bucket.upload_from_stream(filename, io.BytesIO(data), metadata=meta)
        return str(file_id)

    def list_files(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self.files.find({"metadata.userId": user_id}).sort("uploadDate", DESCENDING)
        return [_file_record(doc) for doc in cursor]

    def find_file(self, file_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        if not is_valid_id(file_id):
            return None
        doc = self.files.find_one({"_id": ObjectId(file_id), "metadata.userId": user_id})
        return _file_record(doc) if doc else None

    def find_file_by_name(self, filename: str, user_id: str) -> Optional[Dict[str, Any]]:
        doc = self.files.find_one(
            {"filename": filename, "metadata.userId": user_id},
            sort=[("uploadDate", DESCENDING)],
        )
        return _file_record(doc) if doc else None

    def find_file_any(self, identifier: str) -> Optional[Dict[str, Any]]:
        """Look up a file by id, falling back to its name, regardless of owner."""
        if not identifier:
            return None
        doc = None
        if is_valid_id(identifier):
            doc = self.files.find_one({"_id": ObjectId(identifier)})
        if doc is None:
            doc = self.files.find_one({"filename": identifier})
        return _file_record(doc) if doc else None

    def download(self, file_id: str) -> bytes:
        try:
            stream = self.bucket.open_download_stream(ObjectId(file_id))
        except NoFile:
            raise FileNotFoundInStoreError("File not found", details=file_id)
        return stream.read()

    def session_files(self, user_id: str, session_id: str, uploaded_before: datetime) -> List[Dict[str, Any]]:
        """Non-combined files of a session uploaded at or before ``uploaded_before``, newest first."""
        cursor = self.files.find({
            "metadata.userId": user_id,
            "metadata.sessionId": session_id,
            "metadata.uploadedAt": {"$lte": uploaded_before},
            "metadata.isCombined": {"$ne": True},
        }).sort("metadata.uploadedAt", DESCENDING)
        return [_file_record(doc) for doc in cursor]

    def find_combined_file(self, user_id: str, session_id: str, source_file_ids: str) -> Optional[Dict[str, Any]]:
        doc = self.files.find_one({
            "metadata.userId": user_id,
            "metadata.sessionId": session_id,
            "metadata.isCombined": True,
            "metadata.sourceFileIds": source_file_ids,
        })
        return _file_record(doc) if doc else None

    # ------------------------------------------------------------------
    # Session preferences
    # ------------------------------------------------------------------
    def upsert_session_metadata(self, session_id: str, metadata: Dict[str, Any]):
        self.db[SESSION_COLLECTION].update_one(
            {"sessionId": session_id},
            {"$set": {**metadata, "updatedAt": utcnow()}},
            upsert=True,
        )

    def get_session_metadata(self, session_id: str) -> Dict[str, Any]:
        return self.db[SESSION_COLLECTION].find_one({"sessionId": session_id}, {"_id": 0}) or {}

    # ------------------------------------------------------------------
    # Step analyses
    # ------------------------------------------------------------------
    def upsert_analysis(self, collection: str, filter: Dict[str, Any], fields: Dict[str, Any]):
        self.db[collection].update_one(
            filter,
            {"$set": {**fields, "updatedAt": utcnow()}},
            upsert=True,
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------
    def create_run(self, run_id: str, file_id: str, user_id: str) -> Dict[str, Any]:
        record = {
            "runId": run_id,
            "fileId": file_id,
            "userId": user_id,
            "status": "created",
            "createdAt": utcnow(),
            "steps": {"validation": "pending", "analysis": "pending", "insights": "pending"},
        }
        self.db[RUNS_COLLECTION].insert_one(dict(record))
        return record

    def save_run(self, run_id: str, user_id: str, analysis: Any):
        self.db[RUNS_COLLECTION].update_one(
            {"runId": run_id, "userId": user_id},
            {"$set": {"analysis": analysis, "status": "completed", "completedAt": utcnow()}},
            upsert=True,
        )

    def get_run(self, run_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        return self.db[RUNS_COLLECTION].find_one({"runId": run_id, "userId": user_id}, {"_id": 0})
