#!/usr/bin/env python3
"""
Run the five-step margin pipeline against a running Margin Leakage Analyzer API.

Example:
    python run_pipeline.py --file-id 665f1c... --create-run --output report.json
"""

import argparse
import json
from pathlib import Path

import httpx

from margin_leakage.analysis.report_builder import normalize_margin_analysis
from margin_leakage.analysis.report_excel import build_report_workbook
from margin_leakage.pipeline.orchestrator import HttpStepRunner, MarginPipeline

def main() -> int:
    ap = argparse.ArgumentParser(description="Margin leakage pipeline runner")
    ap.add_argument("--file-id", required=True, help="Stored file to analyze")
    ap.add_argument("--base-url", default="http://localhost:8000")
    ap.add_argument("--user-id", default="anonymous")
    ap.add_argument("--run-id", default=None, help="Existing run to save the report under")
    ap.add_argument("--create-run", action="store_true", help="Create a new run before starting")
    ap.add_argument("--retries", type=int, default=0, help="Times to resume from a failed step")
    ap.add_argument("--output", type=Path, default=None, help="Write report (.json) or workbook (.xlsx)")
    args = ap.parse_args()

    runner = HttpStepRunner(base_url=args.base_url, user_id=args.user_id)
    try:
        run_id = args.run_id
        if args.create_run and not run_id:
            try:
                run_id = runner.create_run(args.file_id)
            except httpx.HTTPError as e:
                print(f"❌ Could not create run: {e}")
                return 1
            print(f"🆕 Created run {run_id}")

        pipeline = MarginPipeline(runner, args.file_id, run_id)
        report = pipeline.run()
        attempts = 0
        while report is None and attempts < args.retries:
            attempts += 1
            report = pipeline.retry()

        if report is None:
            step_id, message = pipeline.first_error()
            print(f"❌ Pipeline stopped at '{step_id}': {message}")
            if args.output:
                args.output.write_text(json.dumps(pipeline.debug_log(), indent=2, default=str), encoding="utf-8")
                print(f"🐛 Debug log written to {args.output}")
            return 1

        print(f"✅ Pipeline complete ({pipeline.progress()}%)")
        if args.output:
            if args.output.suffix.lower() == ".xlsx":
                args.output.write_bytes(build_report_workbook(normalize_margin_analysis(report)))
            else:
                args.output.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
            print(f"💾 Report written to {args.output}")
        return 0
    finally:
        runner.close()

if __name__ == "__main__":
    raise SystemExit(main())
