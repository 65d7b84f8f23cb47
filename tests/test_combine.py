"""Tests for combining the files of an upload session."""

import io
import json

import pytest
from openpyxl import load_workbook

from margin_leakage.core.exceptions import LLMTimeoutError
from margin_leakage.services.combine_service import XLSX_CONTENT_TYPE, build_combined_workbook

COMBINED = [
    {"product_id": "P001", "net_price": 90, "category": "Widgets"},
    {"product_id": "P002", "net_price": 30, "category": "Gadgets", "tags": ["promo"]},
]


@pytest.fixture
def session_files(storage, sales_csv):
    first = storage.add_file("sales.csv", sales_csv, sessionId="sess-1")
    second = storage.add_file("products.csv", b"product_id,category\nP001,Widgets\nP002,Gadgets\n", sessionId="sess-1")
    storage.add_file("elsewhere.csv", sales_csv, sessionId="sess-2")
    return first, second


def _sheet_rows(data):
    ws = load_workbook(io.BytesIO(data)).active
    return ws.title, [list(row) for row in ws.iter_rows(values_only=True)]


def test_combined_workbook_layout():
    title, rows = _sheet_rows(build_combined_workbook(COMBINED, "Combined Data"))
    assert title == "Combined Data"
    assert rows[0] == ["product_id", "net_price", "category"]
    assert rows[1] == ["P001", 90, "Widgets"]
    assert rows[2] == ["P002", 30, "Gadgets"]


def test_empty_workbook_has_placeholder():
    _, rows = _sheet_rows(build_combined_workbook(["not a record"]))
    assert rows == [["No data combined"]]


class TestCombineEndpoint:
    def test_combines_session_files(self, client, storage, openrouter, session_files):
        storage.upsert_session_metadata("sess-1", {"joinType": "inner", "customPrompt": "Match on product_id"})
        reply = "Here you go:\n```json\n" + json.dumps(COMBINED) + "\n```"
        openrouter.queue(reply)

        response = client.post("/api/combine", json={"sessionId": "sess-1"})

        assert response.status_code == 200
        file_id = response.json()["fileId"]
        assert int(response.headers["X-Response-Size"]) == len(reply)
        assert "X-Exec-Time" in response.headers

        blob = storage.blobs[file_id]
        assert blob["filename"].startswith("combined-") and blob["filename"].endswith(".xlsx")
        assert blob["contentType"] == XLSX_CONTENT_TYPE
        assert blob["metadata"]["isCombined"] is True
        assert blob["metadata"]["sourceFileIds"] == ",".join(sorted(session_files))
        assert _sheet_rows(blob["data"])[1][1] == ["P001", 90, "Widgets"]

        prompt = openrouter.prompts[0]
        assert "[File: sales.csv]" in prompt
        assert "[File: products.csv]" in prompt
        assert "elsewhere.csv" not in prompt
        assert "Match on product_id" in prompt
        assert openrouter.calls[0]["timeout"] == 180

    def test_reuses_existing_result(self, client, openrouter, session_files):
        openrouter.queue(json.dumps(COMBINED))
        first = client.post("/api/combine", json={"sessionId": "sess-1"}).json()["fileId"]
        second = client.post("/api/combine", json={"sessionId": "sess-1"})
        assert second.json()["fileId"] == first
        assert second.headers["X-Response-Size"] == "0"
        assert len(openrouter.prompts) == 1

    def test_session_without_files(self, client):
        response = client.post("/api/combine", json={"sessionId": "empty"})
        assert response.status_code == 500
        assert response.json()["error"] == "Combination failed: No files found for this session"

    def test_concurrent_combine_rejected(self, client, combine_service, session_files):
        combine_service._acquire("sess-1")
        try:
            response = client.post("/api/combine", json={"sessionId": "sess-1"})
        finally:
            combine_service._release("sess-1")
        assert response.status_code == 429
        assert response.json()["error"] == "Combine operation already in progress for this session"

    def test_lock_released_after_failure(self, client, openrouter, session_files):
        openrouter.queue("I could not combine these files.", json.dumps(COMBINED))
        assert client.post("/api/combine", json={"sessionId": "sess-1"}).status_code == 500
        assert client.post("/api/combine", json={"sessionId": "sess-1"}).status_code == 200

    def test_timeout(self, client, openrouter, session_files):
        openrouter.queue(LLMTimeoutError("Processing timeout. Try smaller datasets or simpler operations."))
        response = client.post("/api/combine", json={"sessionId": "sess-1"})
        assert response.status_code == 504
        assert response.json()["type"] == "LLMTimeoutError"

    def test_not_configured(self, client, openrouter):
        openrouter.configured = False
        response = client.post("/api/combine", json={"sessionId": "sess-1"})
        assert response.status_code == 500
        assert response.json()["error"] == "OpenRouter API key not configured"
