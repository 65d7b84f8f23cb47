# margin_leakage/analysis/report_builder.py
"""Reconcile per-step results into the saved report and the canonical dashboard view."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..data.file_processing import to_number

STEP_KEYS = ["pricing", "costs", "leakage", "segments", "recommendations"]
SEVERITY_LEVELS = ["critical", "high", "medium", "low"]
PRIORITY_CONFIDENCE = {"high": 0.9, "medium": 0.7}
BOOKKEEPING_KEYS = ("status", "step")


def _first(*candidates: Any, default: Any = None) -> Any:
    """First candidate that is not None."""
    for c in candidates:
        if c is not None:
            return c
    return default


def _section(data: Any, key: str) -> Dict[str, Any]:
    value = data.get(key) if isinstance(data, dict) else None
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _n(value: Any) -> float:
    number = to_number(value)
    return number if number is not None else 0.0


def unwrap_step_payload(step: str, payload: Any) -> Dict[str, Any]:
    """Lift step metrics nested under ``analysis`` (pricing replies) to the top level."""
    if not isinstance(payload, dict):
        return {}
    nested = payload.get("analysis")
    if isinstance(nested, dict):
        merged = dict(nested)
        for key in BOOKKEEPING_KEYS:
            if key in payload:
                merged.setdefault(key, payload[key])
        return merged
    return payload


# ===========================
# Final report
# ===========================
def build_remediation_suggestions(priority_actions: List[Dict[str, Any]],
                                  quick_wins: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    suggestions = []
    for action in priority_actions:
        if not isinstance(action, dict):
            continue
        suggestions.append({
            "type": action.get("category") or action.get("action") or "Optimization",
            "description": action.get("action") or action.get("rationale") or "",
            "impact_estimate": action.get("impact") or "Unknown impact",
            "confidence": PRIORITY_CONFIDENCE.get(action.get("priority"), 0.5),
            "rationale": action.get("rationale") or "",
            "priority": action.get("priority") or "medium",
        })
    for win in quick_wins:
        if not isinstance(win, dict):
            continue
        suggestions.append({
            "type": "Quick Win",
            "description": win.get("action") or "",
            "impact_estimate": win.get("impact") or "Unknown impact",
            "confidence": 0.8,
            "effort": win.get("effort") or "low",
            "priority": "high",
        })
    return suggestions


def _count_severity(priority_actions: List[Dict[str, Any]], quick_wins: List[Any]) -> Dict[str, int]:
    counts = {level: 0 for level in SEVERITY_LEVELS}
    for action in priority_actions:
        priority = action.get("priority") if isinstance(action, dict) else None
        if priority in counts:
            counts[priority] += 1
    counts["high"] += len(quick_wins)
    return counts


def finalize_results(acc: Dict[str, Any], file_id: Optional[str], run_id: Optional[str],
                     completed_at: Optional[str] = None) -> Dict[str, Any]:
    """Build the persisted report from the step accumulator."""
    acc = acc or {}
    sections = {
        key: unwrap_step_payload(key, _first(acc.get(key), acc.get(f"{key}_raw"), default={}))
        for key in STEP_KEYS
    }
    pricing, leakage, segments, recommendations = (
        sections["pricing"], sections["leakage"], sections["segments"], sections["recommendations"]
    )
    priority_actions = _list(recommendations.get("priority_actions"))
    quick_wins = _list(recommendations.get("quick_wins"))

    return {
        **sections,
        "top_product_losses": _first(
            recommendations.get("top_product_losses"),
            leakage.get("top_product_losses"),
            pricing.get("top_product_losses"),
            default=[],
        ),
        "top_customer_losses": _first(leakage.get("top_customer_losses"), default=[]),
        "product_customer_pairs_below_cost": _first(leakage.get("product_customer_pairs_below_cost"), default=[]),
        "samples": _first(
            acc.get("samples"),
            pricing.get("samples"),
            leakage.get("samples"),
            default={"below_cost": [], "low_margin": [], "extreme_discount": []},
        ),
        "remediation_suggestions": build_remediation_suggestions(priority_actions, quick_wins),
        "severity_summary": _first(
            recommendations.get("severity_summary"),
            segments.get("severity_summary"),
            leakage.get("severity_summary"),
            default=_count_severity(priority_actions, quick_wins),
        ),
        "sql_queries": {
            "below_cost": _first(leakage.get("sql"), pricing.get("sql"), segments.get("sql"), default=""),
            "low_margin": _first(pricing.get("sql"), default=""),
            "customer_level": _first(segments.get("sql"), default=""),
        },
        "meta": {
            "fileId": file_id,
            "runId": run_id,
            "completedAt": completed_at or datetime.now(timezone.utc).isoformat(),
            "analysis_type": "margin_leakage",
        },
    }


# ===========================
# Canonical view
# ===========================
def _leak_margin_pct(leak: Dict[str, Any]) -> float:
    net = _n(leak.get("net_price"))
    if not net:
        return 0.0
    return round((net - _n(leak.get("cost"))) / net * 100, 2)


def normalize_margin_analysis(raw: Any) -> Optional[Dict[str, Any]]:
    """Canonical tables for rendering a saved report, whatever shape it was stored in."""
    if not raw:
        return None
    if not isinstance(raw, dict):
        return None

    analysis = raw.get("analysis") if isinstance(raw.get("analysis"), dict) else raw
    meta = raw.get("meta") or analysis.get("meta") or {"fileId": raw.get("fileId"), "runId": raw.get("runId")}
    costs = _section(analysis, "costs")
    leakage = _section(analysis, "leakage")
    segments = _section(analysis, "segments")
    pricing = unwrap_step_payload("pricing", _section(analysis, "pricing"))
    recommendations = _section(analysis, "recommendations")

    canonical: Dict[str, Any] = {
        "meta": meta,
        "runId": meta.get("runId") or raw.get("runId"),
        "top_product_losses": [],
        "top_customer_losses": [],
        "product_customer_pairs_below_cost": [],
        "samples": {"below_cost": [], "low_margin": []},
        "sql_queries": {},
        "severity_summary": {level: 0 for level in SEVERITY_LEVELS},
        "remediation_suggestions": _list(analysis.get("remediation_suggestions")),
        "insights": [],
    }

    worst = _list(costs.get("worst_performers"))
    if worst:
        canonical["top_product_losses"] = [
            {
                "product_id": item.get("product_id"),
                "loss_amt": _n(item.get("revenue_impact")),
                "margin_pct": _n(item.get("margin_pct")),
                "revenue": _n(item.get("net_price")),
                "qty": 1,
                "customers_impacted": 1,
            }
            for item in worst if isinstance(item, dict)
        ]
    if isinstance(costs.get("samples"), list):
        canonical["samples"]["low_margin"] = costs["samples"]

    leaks = [leak for leak in _list(leakage.get("top_leaks")) if isinstance(leak, dict)]
    if leaks:
        if not canonical["top_product_losses"]:
            canonical["top_product_losses"] = [
                {
                    "product_id": leak.get("product_id"),
                    "loss_amt": _n(leak.get("total_impact")),
                    "margin_pct": _leak_margin_pct(leak),
                    "revenue": _n(leak.get("net_price")),
                    "qty": _n(leak.get("quantity")) or 1,
                    "customers_impacted": 1,
                }
                for leak in leaks
            ]

        customers: Dict[str, Dict[str, Any]] = {}
        for leak in leaks:
            customer_id = leak.get("customer_id")
            if not customer_id:
                continue
            if customer_id in customers:
                customers[customer_id]["loss_amt"] += _n(leak.get("total_impact"))
            else:
                customers[customer_id] = {
                    "customer_id": customer_id,
                    "loss_amt": _n(leak.get("total_impact")),
                    "margin_pct": _leak_margin_pct(leak),
                    "revenue": _n(leak.get("net_price")),
                    "qty": _n(leak.get("quantity")) or 1,
                    "products_impacted": 1,
                }
        canonical["top_customer_losses"] = list(customers.values())

        canonical["product_customer_pairs_below_cost"] = [
            {
                "product_id": leak.get("product_id"),
                "customer_id": leak.get("customer_id"),
                "rows": 1,
                "total_margin_amt": _n(leak.get("total_impact")),
            }
            for leak in leaks if leak.get("leak_type") == "below_cost_sale"
        ]
        if isinstance(leakage.get("samples"), list):
            canonical["samples"]["below_cost"] = leakage["samples"]

    if costs.get("sql"):
        canonical["sql_queries"]["low_margin"] = costs["sql"]
    if leakage.get("sql"):
        canonical["sql_queries"]["below_cost"] = leakage["sql"]
    if segments.get("sql"):
        canonical["sql_queries"]["customer_level"] = segments["sql"]

    insights: List[Any] = []
    insights.extend(_list(pricing.get("pricing_insights")))
    insights.extend(_list(costs.get("cost_insights")))
    for section in (leakage, segments, recommendations):
        insights.extend(_list(section.get("insights")))
    canonical["insights"] = [i for i in insights if isinstance(i, str) and i]

    severity = analysis.get("severity_summary")
    if isinstance(severity, dict):
        for level in SEVERITY_LEVELS:
            canonical["severity_summary"][level] = int(_n(severity.get(level)))
    return canonical
