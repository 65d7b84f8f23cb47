# margin_leakage/services/combine_service.py
"""Combine every file of an upload session into one workbook with an LLM."""

import io
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, List, Optional

from openpyxl import Workbook

from ..core.config import Settings, get_analysis_config
from ..core.exceptions import (
    AnalysisError, FileProcessingError, ConfigurationError, CombineInProgressError,
    LLMTimeoutError, ResponseParseError
)
from ..analysis.prompts import combine_prompt
from ..data.file_processing import cell_to_str, describe_for_combine, process_file_data
from ..utils.helpers import epoch_ms
from ..utils.json_repair import parse_ai_array
from .storage import MongoStorage, utcnow

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

@dataclass
class CombineResult:
    file_id: str
    exec_time_ms: int
    response_size: int
    reused: bool = False

def build_combined_workbook(records: List[Any], sheet_name: str = "Combined Data") -> bytes:
    """Workbook with one sheet: header from the first record's keys, one row per record."""
    wb = Workbook()
    ws = wb.active
    ws.title = sheet_name

    records = [r for r in records if isinstance(r, dict)]
    if not records:
        ws.append(["No data combined"])
    else:
        header = list(records[0].keys())
        ws.append(header)
        for record in records:
            ws.append([_cell(record.get(key)) for key in header])

    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()

def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if value is None or isinstance(value, (int, float, str, bool)):
        return value
    return cell_to_str(value)

class CombineService:
    """Per-session LLM combine with in-process locking and result reuse."""

    def __init__(self, storage: MongoStorage, openrouter_client, settings: Settings,
                 config: Optional[dict] = None):
        self.storage = storage
        self.openrouter = openrouter_client
        self.settings = settings
        self.config = config or get_analysis_config()
        self._active: set = set()
        self._guard = threading.Lock()

    def _acquire(self, session_id: str):
        with self._guard:
            if session_id in self._active:
                raise CombineInProgressError("Combine operation already in progress for this session")
            self._active.add(session_id)

    def _release(self, session_id: str):
        with self._guard:
            self._active.discard(session_id)

    def combine(self, session_id: Optional[str], user_id: str) -> CombineResult:
        if not self.openrouter.configured:
            raise ConfigurationError("OpenRouter API key not configured")
        if not session_id:
            raise FileProcessingError("Session ID is required")

        self._acquire(session_id)
        try:
            return self._combine(session_id, user_id)
        except (ConfigurationError, LLMTimeoutError):
            raise
        except AnalysisError as e:
            raise AnalysisError(f"Combination failed: {e.message}", details=e.details, status_code=500)
        except Exception as e:
            raise AnalysisError(f"Combination failed: {str(e)}", status_code=500)
        finally:
            self._release(session_id)

    def _combine(self, session_id: str, user_id: str) -> CombineResult:
        start = time.time()
        request_start = utcnow()
        print(f"\n🧩 ===== COMBINE SESSION {session_id} =====")

        prefs = self.storage.get_session_metadata(session_id)
        join_type = prefs.get("joinType")
        custom_prompt = prefs.get("customPrompt")

        files = self.storage.session_files(user_id, session_id, request_start)
        if not files:
            raise FileProcessingError("No files found for this session")
        source_file_ids = ",".join(sorted(f["id"] for f in files))
        print(f"   📁 {len(files)} file(s) in session snapshot")

        existing = self.storage.find_combined_file(user_id, session_id, source_file_ids)
        if existing:
            print(f"   ♻️ Reusing combined file {existing['id']}")
            return CombineResult(existing["id"], int((time.time() - start) * 1000), 0, reused=True)

        blocks = []
        for record in files:
            buffer = self.storage.download(record["id"])
            columns, rows = process_file_data(buffer, record.get("filename") or "", record.get("contentType"))
            blocks.append(describe_for_combine(
                record.get("filename") or record["id"], columns, rows, self.config["combine_sample_rows"]
            ))
        prompt = combine_prompt(blocks, join_type, custom_prompt)

        result = self.openrouter.generate(
            prompt,
            model=self.settings.openrouter_model,
            temperature=self.config["combine_temperature"],
            max_tokens=self.config["combine_max_tokens"],
            timeout=self.config["combine_timeout_seconds"],
        )
        if result.finish_reason == "length":
            print("   ⚠️ Model reply was truncated (finish_reason=length)")

        records = parse_ai_array(result.text)
        if not isinstance(records, list):
            raise ResponseParseError("AI response was not a list of records")
        print(f"   📊 Parsed {len(records)} combined record(s)")

        data = build_combined_workbook(records, self.config["combine_sheet_name"])
        file_id = self.storage.upload_file(
            f"combined-{epoch_ms()}.xlsx",
            data,
            XLSX_CONTENT_TYPE,
            {
                "userId": user_id,
                "sessionId": session_id,
                "isCombined": True,
                "sourceFileIds": source_file_ids,
                "requestStartTime": request_start,
            },
        )
        exec_ms = int((time.time() - start) * 1000)
        print(f"   ✅ Combined file stored: {file_id} ({exec_ms} ms)")
        return CombineResult(file_id, exec_ms, len(result.text or ""))
