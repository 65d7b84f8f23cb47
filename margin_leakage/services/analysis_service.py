# margin_leakage/services/analysis_service.py
"""Business logic for margin analysis steps, supplementary checks, runs and background pipelines."""

import json
import threading
import queue
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timedelta

from pymongo.errors import PyMongoError

from ..core.config import Settings, get_analysis_config
from ..core.exceptions import (
    AnalysisError, FileProcessingError, FileNotFoundInStoreError, ConfigurationError,
    SessionError, LLMServiceError, ResponseParseError
)
from ..analysis import prompts
from ..analysis.margin_steps import (
    MarginStep, get_step, resolve_step_params, build_step_prompt, parse_step_reply
)
from ..data.file_processing import Row, process_file_data, sheet_name_for
from ..llm_analyzer import generate_json_with_retry
from ..models.analysis import PipelineSession, StepState
from ..pipeline.orchestrator import MarginPipeline, LocalStepRunner
from ..utils.helpers import new_run_id, to_jsonable
from ..utils.log_capture import LogCapture
from .storage import ANALYSES_COLLECTION, MongoStorage, is_valid_id

REPORT_FIELDS = ("analysis", "parsed", "parsedAnalysis", "analysisRaw")

class MarginAnalysisService:
    """Service for handling margin analysis operations."""

    def __init__(self, storage: MongoStorage, vertex_client, openrouter_client,
                 settings: Settings, config: Optional[dict] = None):
        self.storage = storage
        self.vertex = vertex_client
        self.openrouter = openrouter_client
        self.settings = settings
        self.config = config or get_analysis_config()
        self.log_streams: Dict[str, queue.Queue] = {}
        self.active_sessions: Dict[str, PipelineSession] = {}
        self.pipelines: Dict[str, MarginPipeline] = {}

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def resolve_file(self, file_id: Optional[str], user_id: str, allow_name: bool = False) -> Dict[str, Any]:
        """Stored file owned by ``user_id``; ``allow_name`` also accepts a file name."""
        if allow_name and file_id and not is_valid_id(file_id):
            record = self.storage.find_file_by_name(file_id, user_id)
        else:
            if not is_valid_id(file_id):
                raise FileProcessingError("Invalid or missing fileId")
            record = self.storage.find_file(file_id, user_id)
        if not record:
            raise FileNotFoundInStoreError("File not found or access denied", details=file_id)
        return record

    def load_dataset(self, record: Dict[str, Any]) -> Tuple[List[str], List[Row]]:
        buffer = self.storage.download(record["id"])
        if not buffer:
            raise FileProcessingError("Downloaded file is empty")
        columns, rows = process_file_data(buffer, record.get("filename") or "", record.get("contentType"))
        if not columns or not rows:
            raise FileProcessingError("No valid data found in file")
        print(f"📊 Loaded {record.get('filename')}: {len(rows):,} rows, {len(columns)} columns")
        return columns, rows

    def _persist(self, collection: str, filter: Dict[str, Any], fields: Dict[str, Any]):
        try:
            self.storage.upsert_analysis(collection, filter, fields)
        except PyMongoError as e:
            print(f"   ⚠️ Failed to persist results to {collection}: {e}")

    # ------------------------------------------------------------------
    # Margin steps
    # ------------------------------------------------------------------
    def run_step(self, step_name: str, file_id: Optional[str], user_id: str,
                 body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        step = get_step(step_name)
        if step is None:
            raise AnalysisError(f"Unknown margin step '{step_name}'", status_code=404)
        body = body or {}

        print(f"\n🔍 ===== {step.label.upper()} =====")
        record = self.resolve_file(file_id, user_id, allow_name=step.name == "pricing")
        columns, rows = self.load_dataset(record)

        params = resolve_step_params(step, body)
        prompt, sample = build_step_prompt(step, columns, rows, params)
        print(f"   📝 Prompt built from {len(sample)} of {len(rows)} rows")
        result = self.vertex.generate(prompt, model=params["model"])
        parsed = parse_step_reply(result.text)

        if step.strict:
            if parsed is None or not step.validator(parsed):
                print(f"   ❌ {step.failure_message}")
                extra = {"raw_response": result.text} if self.settings.debug else {}
                raise ResponseParseError(
                    step.failure_message,
                    details="Model reply did not contain the expected JSON structure",
                    extra=extra,
                )
        elif parsed is None:
            print("   ⚠️ Model reply was not valid JSON, computing results from the data")
            parsed = step.fallback(columns, rows, params, self.config)

        self._persist_step(step, record, user_id, result, parsed, body.get("runId"))
        print(f"   ✅ {step.label} complete")

        if step.name == "pricing":
            return {
                "status": "success",
                "sheetName": sheet_name_for(record.get("filename")),
                "columns": columns,
                "data": rows[:self.config["preview_rows"]],
                "analysis": parsed,
            }
        return {"status": "success", "step": step.response_step, **parsed}

    def _persist_step(self, step: MarginStep, record: Dict[str, Any], user_id: str, result,
                      parsed: Dict[str, Any], run_id: Optional[str]):
        filter = {"fileId": record["id"], "userId": user_id}
        if step.name == "pricing":
            fields = {"analysis": parsed, "model": result.model, "filename": record.get("filename")}
        else:
            filter["step"] = step.name
            fields = {"analysis": result.text, "parsed": parsed, "model": result.model, "runId": run_id}
        fields["usage"] = result.usage
        self._persist(step.collection, filter, fields)

    # ------------------------------------------------------------------
    # Supplementary analyses
    # ------------------------------------------------------------------
    def analyze(self, file_id: Optional[str], user_id: str, custom_prompt: Optional[str] = None) -> Dict[str, Any]:
        """Free-form analysis of the whole dataset through OpenRouter."""
        if not self.openrouter.configured:
            raise ConfigurationError("OpenRouter API key not configured")
        record = self.resolve_file(file_id, user_id)
        columns, rows = self.load_dataset(record)

        prompt = prompts.analyze_prompt(columns, rows, custom_prompt)
        try:
            result = self.openrouter.generate(
                prompt,
                model=self.settings.openrouter_model,
                temperature=self.config["analyze_temperature"],
                max_tokens=self.config["analyze_max_tokens"],
            )
        except LLMServiceError as e:
            raise LLMServiceError("Analysis failed", details=e.details or e.message, status_code=e.status_code)

        analysis = result.text or "No analysis generated"
        self._persist(
            ANALYSES_COLLECTION,
            {"fileId": record["id"], "userId": user_id, "step": "analyze"},
            {"analysis": analysis, "model": result.model, "customPrompt": custom_prompt},
        )
        return {
            "sheetName": sheet_name_for(record.get("filename")),
            "columns": columns,
            "data": rows[:self.config["preview_rows"]],
            "analysis": analysis,
        }

    def _run_check(self, file_id: Optional[str], user_id: str, prompt_for, required: Dict[str, type],
                   step_key: str, run_id: Optional[str]) -> Dict[str, Any]:
        record = self.resolve_file(file_id, user_id)
        columns, rows = self.load_dataset(record)
        rows = rows[:self.config["checks_max_rows"]]

        raw, parsed = generate_json_with_retry(
            self.vertex,
            prompt_for(columns, rows),
            model=self.config["checks_model"],
            attempts=self.config["checks_attempts"],
        )
        if parsed is None:
            raise ResponseParseError(
                "Failed to parse model output as JSON",
                extra={"status": "error", "raw": raw},
                status_code=502,
            )
        if not all(isinstance(parsed.get(key), kind) for key, kind in required.items()):
            raise ResponseParseError(
                "Model output missing required fields",
                details=", ".join(required),
                extra={"status": "error", "raw": raw, "parsed": parsed},
                status_code=502,
            )

        output = {"status": parsed.get("status") or "success"}
        for key in required:
            output[key] = parsed[key]
        if run_id:
            self._persist(
                ANALYSES_COLLECTION,
                {"runId": run_id, "userId": user_id},
                {f"steps.{step_key}": output, "fileId": record["id"]},
            )
        return output

    def run_logical(self, file_id: Optional[str], user_id: str, rules: Optional[List[str]] = None,
                    run_id: Optional[str] = None) -> Dict[str, Any]:
        rules = rules or self.config["logical_rules"]
        print(f"\n🧪 Logical checks: {', '.join(rules)}")
        return self._run_check(
            file_id, user_id,
            lambda columns, rows: prompts.logical_prompt(columns, rows, rules),
            {"insights": list, "sql": str, "samples": list},
            "logical", run_id,
        )

    def run_outliers(self, file_id: Optional[str], user_id: str, column: Optional[str] = None,
                     methods: Optional[List[str]] = None, thresholds: Optional[Dict[str, float]] = None,
                     run_id: Optional[str] = None) -> Dict[str, Any]:
        column = column or self.config["outlier_column"]
        methods = methods or self.config["outlier_methods"]
        thresholds = thresholds or self.config["outlier_thresholds"]
        print(f"\n📈 Outlier checks on '{column}' ({', '.join(methods)})")
        return self._run_check(
            file_id, user_id,
            lambda columns, rows: prompts.outliers_prompt(columns, rows, column, methods, thresholds),
            {"outlier_counts": dict, "insights": list, "sql": str, "samples": list},
            "outliers", run_id,
        )

    # ------------------------------------------------------------------
    # Runs and reports
    # ------------------------------------------------------------------
    def create_run(self, file_id: Optional[str], user_id: str) -> str:
        if not file_id:
            raise FileProcessingError("fileId is required")
        run_id = new_run_id()
        self.storage.create_run(run_id, file_id, user_id)
        print(f"🆕 Created run {run_id} for file {file_id}")
        return run_id

    def save_report(self, run_id: Optional[str], user_id: str, analysis: Any):
        if not run_id or analysis is None:
            raise FileProcessingError("runId and analysis are required")
        self.storage.save_run(run_id, user_id, analysis)

    def get_report(self, run_id: str, user_id: str) -> Dict[str, Any]:
        doc = self.storage.get_run(run_id, user_id)
        if not doc:
            raise SessionError("Report not found", details=run_id)

        analysis = next((doc[key] for key in REPORT_FIELDS if doc.get(key) is not None), None)
        if isinstance(analysis, str):
            try:
                analysis = json.loads(analysis)
            except ValueError:
                pass

        meta = analysis.get("meta") if isinstance(analysis, dict) else None
        file_id = doc.get("fileId") or (meta or {}).get("fileId")
        record = self.storage.find_file_any(file_id) if file_id else None

        return to_jsonable({
            "runId": run_id,
            "analysis": analysis,
            "fileName": record["filename"] if record else None,
            "meta": meta or {"fileId": file_id, "runId": run_id},
            "status": doc.get("status"),
            "savedAt": doc.get("completedAt") or doc.get("updatedAt") or doc.get("createdAt"),
        })

    # ------------------------------------------------------------------
    # Background pipeline runs
    # ------------------------------------------------------------------
    def start_pipeline(self, file_id: Optional[str], user_id: str) -> PipelineSession:
        """Create a run and execute the five steps on a background thread."""
        record = self.resolve_file(file_id, user_id)
        run_id = self.create_run(record["id"], user_id)
        session = PipelineSession(run_id=run_id, file_id=record["id"], user_id=user_id, status="processing")
        self.active_sessions[run_id] = session

        log_capture = LogCapture(run_id)
        self.log_streams[run_id] = log_capture.queue
        pipeline = MarginPipeline(
            LocalStepRunner(self, user_id),
            record["id"],
            run_id,
            on_progress=log_capture.progress,
            log=log_capture.write,
        )
        self.pipelines[run_id] = pipeline
        self._start_thread(session, pipeline, log_capture, pipeline.run)
        return session

    def retry_pipeline(self, run_id: str, user_id: str) -> PipelineSession:
        """Resume a failed background run from its first failed step."""
        session = self.get_session(run_id)
        pipeline = self.pipelines.get(run_id)
        if not session or not pipeline or session.user_id != user_id:
            raise SessionError(f"Run '{run_id}' not found")
        if session.status != "failed":
            raise AnalysisError(f"Run '{run_id}' is {session.status}, only failed runs can be retried", status_code=409)

        session.status, session.error = "processing", None
        log_capture = LogCapture(run_id)
        self.log_streams[run_id] = log_capture.queue
        pipeline.on_progress, pipeline.log = log_capture.progress, log_capture.write
        self._start_thread(session, pipeline, log_capture, pipeline.retry)
        return session

    def _start_thread(self, session: PipelineSession, pipeline: MarginPipeline, log_capture: LogCapture, target):
        thread = threading.Thread(
            target=self._run_pipeline,
            args=(session, pipeline, log_capture, target)
        )
        thread.daemon = True
        thread.start()

    def _run_pipeline(self, session: PipelineSession, pipeline: MarginPipeline, log_capture: LogCapture, target):
        """Run the pipeline in background thread."""
        try:
            report = target()
            self._sync_session(session, pipeline)
            if report is None:
                step_id, message = pipeline.first_error() or ("", "Pipeline failed")
                session.status, session.error = "failed", f"{step_id}: {message}" if step_id else message
                log_capture.error(session.error)
            else:
                session.status = "completed"
                log_capture.progress(100, "Analysis complete!")
                log_capture.complete()
        except Exception as e:
            self._sync_session(session, pipeline)
            session.status, session.error = "failed", str(e)
            log_capture.error(str(e))

    def _sync_session(self, session: PipelineSession, pipeline: MarginPipeline):
        session.progress = pipeline.progress()
        session.steps = {
            step_id: StepState(status=r.status, summary=r.summary, error=r.error)
            for step_id, r in pipeline.results.items()
        }

    def get_session(self, run_id: str) -> Optional[PipelineSession]:
        """Get session by ID."""
        session = self.active_sessions.get(run_id)
        if session and run_id in self.pipelines:
            self._sync_session(session, self.pipelines[run_id])
        return session

    def cleanup_old_sessions(self, max_age_minutes: int = 60):
        """Clean up old sessions and their associated data."""
        cutoff_time = datetime.now() - timedelta(minutes=max_age_minutes)

        sessions_to_remove = []
        for run_id, session in self.active_sessions.items():
            if session.created_at < cutoff_time and session.status != "processing":
                sessions_to_remove.append(run_id)

        for run_id in sessions_to_remove:
            self.cleanup_session(run_id)

    def cleanup_session(self, run_id: str):
        """Clean up a specific session."""
        self.active_sessions.pop(run_id, None)
        self.log_streams.pop(run_id, None)
        self.pipelines.pop(run_id, None)
