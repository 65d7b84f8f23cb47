# margin_leakage/utils/log_capture.py
"""Log capture utility for streaming pipeline progress."""

import sys
import queue

COMPLETE_MARKER = "__ANALYSIS_COMPLETE__"
ERROR_PREFIX = "__ERROR__"
PROGRESS_PREFIX = "__PROGRESS__"

class LogCapture:
    """Queue of progress messages for one background run, echoed to stdout."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.queue = queue.Queue()

    def write(self, message: str):
        """Write message to queue and stdout."""
        if message.strip():  # Only send non-empty messages
            self.queue.put(message.strip())
        # Also write to original stdout for server logs
        sys.__stdout__.write(message + ("" if message.endswith("\n") else "\n"))

    def progress(self, percentage: int, message: str):
        self.queue.put(f"{PROGRESS_PREFIX}{int(percentage)}__{message}")

    def complete(self):
        self.queue.put(COMPLETE_MARKER)

    def error(self, message: str):
        self.queue.put(f"{ERROR_PREFIX}{message}")

    def flush(self):
        """Flush stdout."""
        sys.__stdout__.flush()
