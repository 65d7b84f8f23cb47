# margin_leakage/pipeline/orchestrator.py
"""Sequential margin pipeline: five step calls, one accumulated report."""

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from ..analysis.report_builder import finalize_results, unwrap_step_payload
from ..core.exceptions import AnalysisError
from ..utils.helpers import to_jsonable

MARGIN_STEPS: List[Dict[str, str]] = [
    {"id": "pricing", "label": "Analyzing pricing structure", "endpoint": "/api/margin/pricing"},
    {"id": "costs", "label": "Calculating cost margins", "endpoint": "/api/margin/costs"},
    {"id": "leakage", "label": "Identifying margin leakage", "endpoint": "/api/margin/leakage"},
    {"id": "segments", "label": "Analyzing customer segments", "endpoint": "/api/margin/segments"},
    {"id": "recommendations", "label": "Generating recommendations", "endpoint": "/api/margin/recommendations"},
]

STEP_PARAMS: Dict[str, Dict[str, Any]] = {
    "pricing": {
        "analyze_fields": ["list_price", "net_price", "discount_pct"],
        "price_thresholds": {"min_price": 0, "max_discount": 100},
    },
    "costs": {
        "cost_fields": ["cost", "cogs"],
        "margin_thresholds": {"min_margin_pct": 10, "target_margin_pct": 30},
    },
    "leakage": {
        "leakage_rules": ["net_price < cost", "margin_pct < 5", "discount_pct > 50"],
        "priority_threshold": 1000,
    },
    "segments": {
        "segment_fields": ["customer_id", "customer_segment", "product_category"],
        "analysis_type": "margin_by_segment",
    },
    "recommendations": {
        "recommendation_types": ["pricing_optimization", "cost_reduction", "segment_targeting"],
    },
}


@dataclass
class StepResponse:
    status_code: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class StepResult:
    status: str = "pending"
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    summary: Optional[str] = None


# ===========================
# Runners
# ===========================
class HttpStepRunner:
    """Calls the step endpoints of a running server."""

    def __init__(self, base_url: str = "http://localhost:8000", user_id: str = "anonymous",
                 timeout: float = 300.0, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self.headers = {"X-User-Id": user_id}

    def create_run(self, file_id: str) -> str:
        response = self.client.post("/api/margin-report", json={"fileId": file_id}, headers=self.headers)
        response.raise_for_status()
        return response.json()["runId"]

    def post_step(self, step_id: str, endpoint: str, file_id: str, payload: Dict[str, Any]) -> StepResponse:
        response = self.client.post(endpoint, params={"fileId": file_id}, json=payload, headers=self.headers)
        return StepResponse(response.status_code, response.text)

    def save_report(self, run_id: str, analysis: Dict[str, Any]):
        response = self.client.post(
            "/api/margin-report/save",
            json={"runId": run_id, "analysis": analysis},
            headers=self.headers,
        )
        response.raise_for_status()

    def close(self):
        self.client.close()


class LocalStepRunner:
    """Runs steps in-process through the analysis service, mirroring HTTP status codes."""

    def __init__(self, service, user_id: str):
        self.service = service
        self.user_id = user_id

    def post_step(self, step_id: str, endpoint: str, file_id: str, payload: Dict[str, Any]) -> StepResponse:
        try:
            result = self.service.run_step(step_id, file_id, self.user_id, payload)
        except AnalysisError as e:
            body = {"error": e.message, "details": e.details, **e.extra}
            return StepResponse(e.status_code, json.dumps(to_jsonable(body), default=str))
        except Exception as e:
            # Same body the general error handler renders over HTTP
            body = {"error": "Internal server error", "details": str(e), "type": e.__class__.__name__}
            return StepResponse(500, json.dumps(body))
        return StepResponse(200, json.dumps(to_jsonable(result), default=str))

    def save_report(self, run_id: str, analysis: Dict[str, Any]):
        try:
            self.service.save_report(run_id, self.user_id, analysis)
        except AnalysisError:
            raise
        except Exception as e:
            raise AnalysisError("Internal server error", details=str(e), status_code=500)


# ===========================
# Response helpers
# ===========================
def parse_response_body(text: str) -> Dict[str, Any]:
    if not text:
        return {}
    try:
        body = json.loads(text)
    except ValueError:
        return {"rawText": text}
    return body if isinstance(body, dict) else {"rawText": text}


def error_message(body: Dict[str, Any], status_code: int) -> str:
    return body.get("error") or body.get("message") or f"HTTP {status_code}"


def _fmt(value: Any) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def summarize_step(step_id: str, result: Dict[str, Any]) -> str:
    """One-line summary of a step result, shown next to the step in progress output."""
    data = unwrap_step_payload(step_id, result)
    if step_id == "pricing":
        products = data.get("total_products", data.get("pricing_count"))
        return f"Products: {_fmt(products)}, avg discount: {_fmt(data.get('avg_discount_pct'))}"
    if step_id == "costs":
        return f"Avg margin: {_fmt(data.get('avg_margin_pct'))}%"
    if step_id == "leakage":
        count = data.get("leakage_instances")
        if count is None:
            count = data.get("leakage_count")
        if count is None:
            count = len(data.get("top_leaks") or [])
        return f"{count} leakage(s) found"
    if step_id == "segments":
        count = data.get("segments_analyzed")
        if count is None:
            count = len(data.get("segments") or [])
        return f"{count} segments"
    if step_id == "recommendations":
        count = data.get("recommendations_count")
        if count is None:
            count = len(data.get("recommendations") or data.get("priority_actions") or [])
        return f"{count} recommendations"
    return "done"


# ===========================
# Pipeline
# ===========================
class MarginPipeline:
    """Runs the five margin steps in order, stopping at the first failure."""

    def __init__(self, runner, file_id: str, run_id: Optional[str] = None,
                 on_progress: Optional[Callable[[int, str], None]] = None,
                 log: Callable[[str], None] = print):
        self.runner = runner
        self.file_id = file_id
        self.run_id = run_id
        self.on_progress = on_progress
        self.log = log
        self.results: Dict[str, StepResult] = {s["id"]: StepResult() for s in MARGIN_STEPS}
        self.acc: Dict[str, Any] = {}
        self.final_report: Optional[Dict[str, Any]] = None

    def progress(self) -> int:
        done = sum(1 for r in self.results.values() if r.status == "success")
        return int(done / len(MARGIN_STEPS) * 100)

    def first_error(self) -> Optional[Tuple[str, str]]:
        for step in MARGIN_STEPS:
            result = self.results[step["id"]]
            if result.status == "error":
                return step["id"], result.error
        return None

    def run(self, start_index: int = 0) -> Optional[Dict[str, Any]]:
        """Execute steps from ``start_index``; returns the final report or None on failure."""
        self.log(f"🚀 Margin pipeline for file {self.file_id} (run: {self.run_id or 'none'})")
        for step in MARGIN_STEPS[start_index:]:
            if not self._execute(step):
                return None
        return self._finalize()

    def retry(self) -> Optional[Dict[str, Any]]:
        """Reset the first failed step and resume from it."""
        for index, step in enumerate(MARGIN_STEPS):
            if self.results[step["id"]].status == "error":
                self.results[step["id"]] = StepResult()
                self.log(f"🔁 Retrying from step: {step['label']}")
                return self.run(start_index=index)
        return self.final_report

    def _report_progress(self, message: str):
        if self.on_progress:
            self.on_progress(self.progress(), message)

    def _execute(self, step: Dict[str, str]) -> bool:
        result = self.results[step["id"]]
        result.status, result.error = "loading", None
        self.log(f"🔄 {step['label']}...")
        self._report_progress(f"{step['label']}...")

        payload = {"fileId": self.file_id, "runId": self.run_id, **STEP_PARAMS[step["id"]]}
        try:
            response = self.runner.post_step(step["id"], step["endpoint"], self.file_id, payload)
        except (httpx.HTTPError, AnalysisError) as e:
            return self._fail(step, str(e))

        body = parse_response_body(response.text)
        if not response.ok:
            return self._fail(step, error_message(body, response.status_code))

        self.acc[step["id"]] = body
        result.status, result.data = "success", body
        result.summary = summarize_step(step["id"], body)
        self.log(f"   ✅ {step['label']}: {result.summary}")
        self._report_progress(f"{step['label']} complete")
        return True

    def _fail(self, step: Dict[str, str], message: str) -> bool:
        result = self.results[step["id"]]
        result.status, result.error = "error", message
        self.log(f"   ❌ {step['label']} failed: {message}")
        return False

    def _finalize(self) -> Dict[str, Any]:
        report = finalize_results(self.acc, self.file_id, self.run_id)
        if self.run_id:
            try:
                self.runner.save_report(self.run_id, report)
                self.log(f"💾 Report saved for run {self.run_id}")
            except (httpx.HTTPError, AnalysisError) as e:
                self.log(f"   ⚠️ Failed to save report for run {self.run_id}: {e}")
        self.final_report = report
        self._report_progress("Analysis complete!")
        return report

    def debug_log(self) -> Dict[str, Any]:
        return {
            "fileId": self.file_id,
            "runId": self.run_id,
            "steps": {step_id: asdict(result) for step_id, result in self.results.items()},
            "accumulator": self.acc,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
