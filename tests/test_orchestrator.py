"""Tests for the sequential margin pipeline."""

import json

import httpx
import pytest
from pymongo.errors import ServerSelectionTimeoutError

from margin_leakage.core.exceptions import AnalysisError, FileProcessingError
from margin_leakage.pipeline.orchestrator import (
    MARGIN_STEPS,
    STEP_PARAMS,
    LocalStepRunner,
    MarginPipeline,
    StepResponse,
    error_message,
    parse_response_body,
    summarize_step,
)

STEP_BODIES = {
    "pricing": {"status": "success", "analysis": {"total_products": 5, "avg_discount_pct": 28.0}},
    "costs": {"status": "success", "step": "cost_analysis", "avg_margin_pct": 12.5},
    "leakage": {"status": "success", "step": "leakage_analysis", "leakage_instances": 0, "top_leaks": []},
    "segments": {"status": "success", "step": "segment_analysis", "segments": [{}, {}, {}]},
    "recommendations": {"status": "success", "step": "recommendations", "recommendations_count": 4},
}


class ScriptedRunner:
    """Runner returning canned responses; ``failures`` maps a step id to queued error responses."""

    def __init__(self, failures=None, save_error=None):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.save_error = save_error
        self.calls = []
        self.saved = []

    def post_step(self, step_id, endpoint, file_id, payload):
        self.calls.append((step_id, endpoint, file_id, payload))
        queued = self.failures.get(step_id)
        if queued:
            failure = queued.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure
        return StepResponse(200, json.dumps(STEP_BODIES[step_id]))

    def save_report(self, run_id, analysis):
        if self.save_error:
            raise self.save_error
        self.saved.append((run_id, analysis))


def test_step_definitions_are_ordered():
    assert [s["id"] for s in MARGIN_STEPS] == ["pricing", "costs", "leakage", "segments", "recommendations"]
    assert MARGIN_STEPS[0]["endpoint"] == "/api/margin/pricing"
    assert STEP_PARAMS["pricing"]["price_thresholds"] == {"min_price": 0, "max_discount": 100}
    assert STEP_PARAMS["costs"]["margin_thresholds"] == {"min_margin_pct": 10, "target_margin_pct": 30}


def test_full_run_accumulates_and_saves():
    runner = ScriptedRunner()
    logs = []
    progress = []
    pipeline = MarginPipeline(runner, "file-1", "run-1", on_progress=lambda p, m: progress.append(p), log=logs.append)

    report = pipeline.run()

    assert report is not None
    assert [c[0] for c in runner.calls] == [s["id"] for s in MARGIN_STEPS]
    assert runner.calls[0][3] == {"fileId": "file-1", "runId": "run-1", **STEP_PARAMS["pricing"]}
    assert pipeline.progress() == 100
    assert progress[-1] == 100
    assert runner.saved == [("run-1", report)]
    assert report["pricing"]["total_products"] == 5
    assert report["meta"]["runId"] == "run-1"


def test_summaries():
    runner = ScriptedRunner()
    pipeline = MarginPipeline(runner, "file-1", log=lambda m: None)
    pipeline.run()
    summaries = {k: r.summary for k, r in pipeline.results.items()}
    assert summaries == {
        "pricing": "Products: 5, avg discount: 28.0",
        "costs": "Avg margin: 12.5%",
        "leakage": "0 leakage(s) found",
        "segments": "3 segments",
        "recommendations": "4 recommendations",
    }


def test_failure_stops_run_and_retry_resumes():
    runner = ScriptedRunner(failures={"leakage": [StepResponse(500, json.dumps({"error": "AI analysis failed"}))]})
    pipeline = MarginPipeline(runner, "file-1", "run-1", log=lambda m: None)

    assert pipeline.run() is None
    assert pipeline.results["leakage"].status == "error"
    assert pipeline.results["leakage"].error == "AI analysis failed"
    assert pipeline.results["segments"].status == "pending"
    assert pipeline.first_error() == ("leakage", "AI analysis failed")
    assert pipeline.progress() == 40
    assert runner.saved == []

    report = pipeline.retry()
    assert report is not None
    assert [c[0] for c in runner.calls] == [
        "pricing", "costs", "leakage", "leakage", "segments", "recommendations",
    ]
    assert pipeline.first_error() is None


def test_transport_error_fails_step():
    runner = ScriptedRunner(failures={"pricing": [httpx.ConnectError("connection refused")]})
    pipeline = MarginPipeline(runner, "file-1", log=lambda m: None)
    assert pipeline.run() is None
    assert pipeline.first_error() == ("pricing", "connection refused")


def test_save_failure_is_logged_not_raised():
    runner = ScriptedRunner(save_error=httpx.HTTPStatusError(
        "boom", request=httpx.Request("POST", "http://x"), response=httpx.Response(500)
    ))
    logs = []
    pipeline = MarginPipeline(runner, "file-1", "run-1", log=logs.append)
    assert pipeline.run() is not None
    assert any("Failed to save report" in line for line in logs)


def test_no_save_without_run_id():
    runner = ScriptedRunner()
    MarginPipeline(runner, "file-1", log=lambda m: None).run()
    assert runner.saved == []


def test_debug_log():
    runner = ScriptedRunner()
    pipeline = MarginPipeline(runner, "file-1", "run-1", log=lambda m: None)
    pipeline.run()
    debug = pipeline.debug_log()
    assert debug["fileId"] == "file-1"
    assert debug["steps"]["costs"]["status"] == "success"
    assert debug["accumulator"]["costs"]["avg_margin_pct"] == 12.5
    assert "timestamp" in debug


def test_response_helpers():
    assert parse_response_body("") == {}
    assert parse_response_body("<html>oops</html>") == {"rawText": "<html>oops</html>"}
    assert error_message({"message": "bad"}, 400) == "bad"
    assert error_message({"rawText": "x"}, 502) == "HTTP 502"
    assert summarize_step("recommendations", {"priority_actions": [{}, {}]}) == "2 recommendations"
    assert summarize_step("pricing", {}) == "Products: N/A, avg discount: N/A"
    assert summarize_step("leakage", {"leakage_count": 3, "top_leaks": [{}]}) == "3 leakage(s) found"
    assert summarize_step("leakage", {"top_leaks": [{}, {}]}) == "2 leakage(s) found"


class FailingService:
    def __init__(self, error=None, save_error=None):
        self.error = error
        self.save_error = save_error

    def run_step(self, step_name, file_id, user_id, body):
        if self.error:
            raise self.error
        return {"status": "success", "step": step_name}

    def save_report(self, run_id, user_id, analysis):
        if self.save_error:
            raise self.save_error


class TestLocalStepRunner:
    def test_analysis_error_keeps_status_and_body(self):
        runner = LocalStepRunner(FailingService(FileProcessingError("Downloaded file is empty")), "u1")
        response = runner.post_step("costs", "/api/margin/costs", "file-1", {})
        assert response.status_code == 400
        assert json.loads(response.text)["error"] == "Downloaded file is empty"

    def test_unexpected_error_becomes_internal_server_error(self):
        runner = LocalStepRunner(FailingService(ServerSelectionTimeoutError("No servers available")), "u1")
        response = runner.post_step("costs", "/api/margin/costs", "file-1", {})
        assert response.status_code == 500
        assert json.loads(response.text) == {
            "error": "Internal server error",
            "details": "No servers available",
            "type": "ServerSelectionTimeoutError",
        }

    def test_unexpected_error_fails_step_so_retry_resumes(self):
        service = FailingService(RuntimeError("store down"))
        pipeline = MarginPipeline(LocalStepRunner(service, "u1"), "file-1", log=lambda m: None)
        assert pipeline.run() is None
        assert pipeline.results["pricing"].status == "error"
        assert pipeline.first_error() == ("pricing", "Internal server error")

        service.error = None
        assert pipeline.retry() is not None
        assert pipeline.first_error() is None

    def test_save_error_is_wrapped(self):
        runner = LocalStepRunner(FailingService(save_error=RuntimeError("write failed")), "u1")
        with pytest.raises(AnalysisError) as exc:
            runner.save_report("run-1", {})
        assert exc.value.status_code == 500
        assert exc.value.details == "write failed"

        logs = []
        pipeline = MarginPipeline(runner, "file-1", "run-1", log=logs.append)
        assert pipeline.run() is not None
        assert any("Failed to save report" in line for line in logs)
