"""Tests for the MongoDB/GridFS store against mocked pymongo objects."""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from bson import ObjectId
from gridfs.errors import NoFile

from margin_leakage.core.config import Settings
from margin_leakage.core.exceptions import FileNotFoundInStoreError
from margin_leakage.services.storage import MongoStorage, is_valid_id


@pytest.fixture
def mongo():
    client = MagicMock()
    with patch("margin_leakage.services.storage.gridfs.GridFSBucket") as bucket_cls:
        store = MongoStorage(Settings(), client=client)
    store.bucket = bucket_cls.return_value
    return store


def test_is_valid_id():
    assert is_valid_id(str(ObjectId()))
    assert not is_valid_id("sales.csv")
    assert not is_valid_id(None)


def test_upload_sets_content_type_and_upload_time(mongo):
    oid = ObjectId()
    mongo.bucket.upload_from_stream.return_value = oid

    file_id = mongo.upload_file("sales.csv", b"a,b\n", "text/csv", {"userId": "u1"})

    assert file_id == str(oid)
    name, stream = mongo.bucket.upload_from_stream.call_args[0]
    meta = mongo.bucket.upload_from_stream.call_args[1]["metadata"]
    assert name == "sales.csv"
    assert stream.read() == b"a,b\n"
    assert meta["contentType"] == "text/csv"
    assert meta["userId"] == "u1"
    assert isinstance(meta["uploadedAt"], datetime)


def test_find_file_scopes_by_owner(mongo):
    oid = ObjectId()
    mongo.files.find_one.return_value = {
        "_id": oid, "filename": "sales.csv", "length": 4,
        "uploadDate": datetime(2024, 1, 1, tzinfo=timezone.utc),
        "metadata": {"userId": "u1", "contentType": "text/csv"},
    }

    record = mongo.find_file(str(oid), "u1")

    mongo.files.find_one.assert_called_once_with({"_id": oid, "metadata.userId": "u1"})
    assert record["id"] == str(oid)
    assert record["contentType"] == "text/csv"


def test_find_file_rejects_malformed_id(mongo):
    assert mongo.find_file("not-an-id", "u1") is None
    mongo.files.find_one.assert_not_called()


def test_download_missing_file(mongo):
    mongo.bucket.open_download_stream.side_effect = NoFile("gone")
    with pytest.raises(FileNotFoundInStoreError):
        mongo.download(str(ObjectId()))


def test_session_files_excludes_combined(mongo):
    cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)
    mongo.files.find.return_value.sort.return_value = []

    assert mongo.session_files("u1", "sess-1", cutoff) == []

    query = mongo.files.find.call_args[0][0]
    assert query["metadata.sessionId"] == "sess-1"
    assert query["metadata.uploadedAt"] == {"$lte": cutoff}
    assert query["metadata.isCombined"] == {"$ne": True}


def test_save_run_upserts_completed(mongo):
    runs = mongo.db.__getitem__.return_value
    mongo.save_run("margin_1_abc", "u1", {"meta": {}})

    filter, update = runs.update_one.call_args[0]
    assert filter == {"runId": "margin_1_abc", "userId": "u1"}
    assert update["$set"]["status"] == "completed"
    assert runs.update_one.call_args[1] == {"upsert": True}


def test_create_run_starts_pending(mongo):
    record = mongo.create_run("margin_1_abc", "file-1", "u1")
    assert record["status"] == "created"
    assert record["steps"] == {"validation": "pending", "analysis": "pending", "insights": "pending"}
