# margin_leakage/utils/helpers.py
"""Utility helper functions."""

import random
import string
import time
from datetime import datetime
from typing import Optional, List, Dict, Any

_BASE36 = string.digits + string.ascii_lowercase

def mask_secret(secret: Optional[str]) -> str:
    """Show only the last 4 characters of a secret."""
    if not secret:
        return "<not set>"
    if len(secret) <= 4:
        return "****"
    return f"****{secret[-4:]}"

def epoch_ms() -> int:
    return int(time.time() * 1000)

def new_run_id() -> str:
    """Run identifier: margin_<epoch ms>_<7 base-36 chars>."""
    suffix = "".join(random.choice(_BASE36) for _ in range(7))
    return f"margin_{epoch_ms()}_{suffix}"

def to_jsonable(value: Any) -> Any:
    """Convert datetimes (and containers holding them) into ISO strings."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value

def build_step_overrides(body: Optional[Dict[str, Any]], allowed: List[str]) -> Dict[str, Any]:
    """Pick step parameters present in a request body, ignoring nulls."""
    overrides = {}
    for key in allowed:
        if body and body.get(key) is not None:
            overrides[key] = body[key]
    return overrides
