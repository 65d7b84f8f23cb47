# margin_leakage/analysis/fallbacks.py
"""Step results computed directly from the rows when a model reply cannot be used."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..core.config import get_analysis_config
from ..data.file_processing import Row, coerce_numeric, find_column, rows_to_frame

# -----------------------------------------------------------------------------
# SQL templates
# -----------------------------------------------------------------------------
def fallback_sql(check_type: str, threshold: float = 20, days: int = 30, min_volume: int = 1) -> str:
    """Reference SQL for a margin check against a ``transactions`` table."""
    if check_type == "below_cost":
        return (
            "SELECT product_id, customer_id, COUNT(*) AS rows, SUM(net_price - cost) AS total_margin_amt\n"
            "FROM transactions\n"
            "WHERE net_price < cost\n"
            "GROUP BY product_id, customer_id\n"
            "ORDER BY total_margin_amt ASC\n"
            "LIMIT 100;"
        )
    if check_type == "low_margin":
        return (
            "SELECT product_id, SUM(quantity) AS total_qty, SUM(net_price*quantity) AS revenue, SUM(cost*quantity) AS cost,\n"
            "       (SUM(net_price*quantity)-SUM(cost*quantity)) AS margin_amt,\n"
            "       100.0 * ((SUM(net_price*quantity)-SUM(cost*quantity)) / SUM(net_price*quantity)) AS margin_pct\n"
            "FROM transactions\n"
            f"WHERE transaction_date >= DATE_SUB(CURRENT_DATE, INTERVAL {days} DAY)\n"
            "GROUP BY product_id\n"
            f"HAVING margin_pct < {threshold} AND total_qty >= {min_volume}\n"
            "ORDER BY margin_amt ASC;"
        )
    if check_type == "customer_level":
        return (
            "SELECT customer_id, SUM(quantity) AS total_qty, SUM(net_price*quantity) AS revenue, SUM(cost*quantity) AS cost,\n"
            "       (SUM(net_price*quantity)-SUM(cost*quantity)) AS margin_amt,\n"
            "       100.0 * ((SUM(net_price*quantity)-SUM(cost*quantity)) / SUM(net_price*quantity)) AS margin_pct\n"
            "FROM transactions\n"
            "GROUP BY customer_id\n"
            f"HAVING margin_pct < {threshold}\n"
            "ORDER BY margin_amt ASC;"
        )
    if check_type == "extreme_discount":
        return (
            "SELECT product_id, customer_id, discount_pct, net_price, list_price,\n"
            "       (list_price - net_price) AS discount_amt\n"
            "FROM transactions\n"
            "WHERE discount_pct > 50\n"
            "ORDER BY discount_pct DESC\n"
            "LIMIT 100;"
        )
    return "SELECT * FROM transactions LIMIT 10;"

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _num(value: Any, digits: int = 2) -> Optional[float]:
    if value is None:
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if np.isnan(f) or np.isinf(f):
        return None
    return round(f, digits)

def _prepare(columns: List[str], rows: List[Row], config: dict,
             cost_fields: Optional[List[str]] = None) -> Tuple[pd.DataFrame, Dict[str, Optional[str]]]:
    """Frame with detected roles (product, customer, prices, cost, quantity, discount) coerced to numbers."""
    cols = {
        "product": find_column(columns, config["product_column_hints"]),
        "customer": find_column(columns, config["customer_column_hints"]),
        "net_price": find_column(columns, config["net_price_column_hints"]),
        "list_price": find_column(columns, config["list_price_column_hints"]),
        "cost": find_column(columns, list(cost_fields or []) + config["cost_column_hints"]),
        "quantity": find_column(columns, config["quantity_column_hints"]),
        "discount": find_column(columns, config["discount_column_hints"]),
    }
    numeric = [cols[k] for k in ("net_price", "list_price", "cost", "quantity", "discount") if cols[k]]
    df = coerce_numeric(rows_to_frame(columns, rows), numeric)

    if cols["net_price"] and cols["cost"]:
        net, cost = df[cols["net_price"]], df[cols["cost"]]
        df["_units"] = df[cols["quantity"]].fillna(1) if cols["quantity"] else 1.0
        df["_margin_pct"] = np.where(net != 0, (net - cost) / net.replace(0, np.nan) * 100, np.nan)
        df["_loss"] = (cost - net).clip(lower=0) * df["_units"]
        df["_revenue"] = net * df["_units"]
        df["_cost_total"] = cost * df["_units"]

    if cols["discount"]:
        df["_discount_pct"] = df[cols["discount"]]
    elif cols["list_price"] and cols["net_price"]:
        lp = df[cols["list_price"]].replace(0, np.nan)
        df["_discount_pct"] = (lp - df[cols["net_price"]]) / lp * 100
    return df, cols

def _has_margin(df: pd.DataFrame) -> bool:
    return "_margin_pct" in df.columns

def _label(row: pd.Series, col: Optional[str], fallback: str) -> str:
    if col and str(row.get(col, "")).strip():
        return str(row[col])
    return fallback

# -----------------------------------------------------------------------------
# Costs
# -----------------------------------------------------------------------------
def cost_fallback(columns: List[str], rows: List[Row], params: Dict[str, Any],
                  config: Optional[dict] = None) -> Dict[str, Any]:
    config = config or get_analysis_config()
    thresholds = params.get("margin_thresholds") or {}
    min_margin = float(thresholds.get("min_margin_pct", 10))
    target_margin = float(thresholds.get("target_margin_pct", 30))

    df, cols = _prepare(columns, rows, config, params.get("cost_fields"))
    total_products = int(df[cols["product"]].nunique()) if cols["product"] else len(df)

    if not _has_margin(df):
        return {
            "total_products": total_products,
            "avg_margin_pct": None,
            "negative_margin_count": 0,
            "below_target_count": 0,
            "margin_distribution": {"negative": 0, "0-10%": 0, "10-30%": 0, "30%+": 0},
            "worst_performers": [],
            "cost_insights": ["Net price and cost columns were not found, so margins could not be computed."],
            "sql": fallback_sql("below_cost"),
            "samples": [],
            "analysis_source": "computed",
        }

    priced = df[df["_margin_pct"].notna()]
    margin = priced["_margin_pct"]
    negative = int((margin < 0).sum())
    below_target = int((margin < target_margin).sum())
    avg_margin = _num(margin.mean()) if len(margin) else None

    worst = priced.nsmallest(int(config["worst_performers"]), "_margin_pct")
    worst_performers = [
        {
            "product_id": _label(r, cols["product"], f"row {i + 1}"),
            "margin_pct": _num(r["_margin_pct"]),
            "revenue_impact": _num(r["_loss"]),
            "cost": _num(r[cols["cost"]]),
            "net_price": _num(r[cols["net_price"]]),
        }
        for i, (_, r) in enumerate(worst.iterrows())
    ]
    samples = [
        {
            "product_id": _label(r, cols["product"], ""),
            "cost": _num(r[cols["cost"]]),
            "net_price": _num(r[cols["net_price"]]),
            "margin_pct": _num(r["_margin_pct"]),
        }
        for _, r in priced[priced["_margin_pct"] < min_margin].head(int(config["sample_limit"])).iterrows()
    ]

    insights = [f"{negative} of {len(priced)} priced rows sell below cost."]
    if avg_margin is not None:
        insights.append(f"Average margin is {avg_margin:.1f}% against a {target_margin:.0f}% target.")
    insights.append(f"{below_target} rows fall below the {target_margin:.0f}% target margin.")

    return {
        "total_products": total_products,
        "avg_margin_pct": avg_margin,
        "negative_margin_count": negative,
        "below_target_count": below_target,
        "margin_distribution": {
            "negative": negative,
            "0-10%": int(((margin >= 0) & (margin < 10)).sum()),
            "10-30%": int(((margin >= 10) & (margin < 30)).sum()),
            "30%+": int((margin >= 30).sum()),
        },
        "worst_performers": worst_performers,
        "cost_insights": insights,
        "sql": fallback_sql("low_margin", threshold=target_margin),
        "samples": samples,
        "analysis_source": "computed",
    }

# -----------------------------------------------------------------------------
# Segments
# -----------------------------------------------------------------------------
def _segment_severity(margin_pct: Optional[float], leakage: float, low_margin: float) -> str:
    if leakage > 0 or (margin_pct is not None and margin_pct < 0):
        return "high"
    if margin_pct is not None and margin_pct < low_margin:
        return "medium"
    return "low"

def segment_fallback(columns: List[str], rows: List[Row], params: Dict[str, Any],
                     config: Optional[dict] = None) -> Dict[str, Any]:
    config = config or get_analysis_config()
    low_margin = float(config["low_margin_threshold_pct"])
    df, cols = _prepare(columns, rows, config)

    segment_col = None
    for field in params.get("segment_fields") or []:
        segment_col = find_column(columns, [field])
        if segment_col:
            break
    segment_col = segment_col or cols["customer"]

    result: Dict[str, Any] = {
        "segments_analyzed": 0,
        "segment_field": segment_col,
        "segments": [],
        "severity_summary": {"high": 0, "medium": 0, "low": 0},
        "top_customer_losses": [],
        "insights": [],
        "sql": fallback_sql("customer_level", threshold=low_margin),
        "analysis_source": "computed",
    }
    if not segment_col:
        result["insights"].append("No segment column was found in the data.")
        return result
    if not _has_margin(df):
        result["segments_analyzed"] = int(df[segment_col].nunique())
        result["insights"].append("Net price and cost columns were not found, so segment margins could not be computed.")
        return result

    grouped = df.groupby(segment_col).agg(
        revenue=("_revenue", "sum"),
        cost=("_cost_total", "sum"),
        leakage_amount=("_loss", "sum"),
        transactions=("_revenue", "size"),
    )
    segments = []
    for name, g in grouped.iterrows():
        margin_pct = _num((g["revenue"] - g["cost"]) / g["revenue"] * 100) if g["revenue"] else None
        leakage = float(g["leakage_amount"] or 0)
        severity = _segment_severity(margin_pct, leakage, low_margin)
        result["severity_summary"][severity] += 1
        segments.append({
            "segment": str(name),
            "revenue": _num(g["revenue"]),
            "cost": _num(g["cost"]),
            "margin_pct": margin_pct,
            "leakage_amount": _num(leakage),
            "transactions": int(g["transactions"]),
            "severity": severity,
        })
    segments.sort(key=lambda s: (-(s["leakage_amount"] or 0), s["margin_pct"] if s["margin_pct"] is not None else 0))
    result["segments"] = segments
    result["segments_analyzed"] = len(segments)

    if cols["customer"]:
        by_customer = df[df["_loss"] > 0].groupby(cols["customer"]).agg(
            loss_amt=("_loss", "sum"), transactions=("_loss", "size")
        ).sort_values("loss_amt", ascending=False).head(10)
        result["top_customer_losses"] = [
            {"customer_id": str(cid), "loss_amt": _num(r["loss_amt"]), "transactions": int(r["transactions"])}
            for cid, r in by_customer.iterrows()
        ]

    leaking = [s for s in segments if (s["leakage_amount"] or 0) > 0]
    result["insights"].append(f"{len(segments)} {segment_col} segments analyzed; {len(leaking)} show below-cost sales.")
    if leaking:
        top = leaking[0]
        result["insights"].append(
            f"Segment {top['segment']} leaks the most margin ({top['leakage_amount']:,.2f} below cost)."
        )
    return result

# -----------------------------------------------------------------------------
# Recommendations
# -----------------------------------------------------------------------------
def recommendation_fallback(columns: List[str], rows: List[Row], params: Dict[str, Any],
                            config: Optional[dict] = None) -> Dict[str, Any]:
    config = config or get_analysis_config()
    low_margin = float(config["low_margin_threshold_pct"])
    allowed = set(params.get("recommendation_types") or [])
    df, cols = _prepare(columns, rows, config)

    priority_actions: List[Dict[str, Any]] = []
    quick_wins: List[Dict[str, Any]] = []
    insights: List[str] = []

    if _has_margin(df):
        product_col = cols["product"]
        below = df[df["_loss"] > 0]
        if product_col and not below.empty:
            by_product = below.groupby(product_col).agg(
                loss=("_loss", "sum"),
                rows=("_loss", "size"),
                unit_cost=(cols["cost"], "max"),
            ).sort_values("loss", ascending=False).head(3)
            for product, r in by_product.iterrows():
                customers = below.loc[below[product_col] == product, cols["customer"]].nunique() if cols["customer"] else 0
                priority_actions.append({
                    "action": f"Raise the net price of {product} above its unit cost of {r['unit_cost']:,.2f}",
                    "rationale": f"Sold below cost in {int(r['rows'])} transaction(s)"
                                 + (f" to {customers} customer(s)" if customers else ""),
                    "impact": f"Recover {r['loss']:,.2f}",
                    "priority": "high",
                    "category": "pricing_optimization",
                })
        low = df[(df["_margin_pct"] >= 0) & (df["_margin_pct"] < low_margin)]
        if not low.empty:
            count = int(low[product_col].nunique()) if product_col else len(low)
            priority_actions.append({
                "action": f"Review pricing and supplier cost for {count} low-margin product(s)",
                "rationale": f"Margins sit between 0% and {low_margin:.0f}%",
                "impact": f"Margin on {low['_revenue'].sum():,.2f} of revenue",
                "priority": "medium",
                "category": "cost_reduction",
            })
        if cols["customer"] and not below.empty:
            worst_customer = below.groupby(cols["customer"])["_loss"].sum().sort_values(ascending=False)
            cid, loss = worst_customer.index[0], worst_customer.iloc[0]
            priority_actions.append({
                "action": f"Renegotiate terms with customer {cid}",
                "rationale": "Largest share of below-cost sales",
                "impact": f"Recover {loss:,.2f}",
                "priority": "medium",
                "category": "segment_targeting",
            })
        insights.append(f"{len(below)} transaction(s) are priced below cost, losing {below['_loss'].sum():,.2f}.")

    if "_discount_pct" in df.columns:
        extreme = df[df["_discount_pct"] > 50]
        if not extreme.empty:
            quick_wins.append({
                "action": "Cap discounts at 50% without approval",
                "impact": f"{len(extreme)} transaction(s) currently exceed a 50% discount",
                "effort": "low",
            })
    quick_wins.append({
        "action": "Block quotes whose net price is below unit cost",
        "impact": "Prevents new below-cost sales",
        "effort": "low",
    })

    if allowed:
        priority_actions = [a for a in priority_actions if a["category"] in allowed]
    if not priority_actions:
        insights.append("No below-cost or low-margin products were detected in the data.")

    return {
        "recommendations_count": len(priority_actions) + len(quick_wins),
        "priority_actions": priority_actions,
        "quick_wins": quick_wins,
        "insights": insights,
        "sql": fallback_sql("below_cost"),
        "analysis_source": "computed",
    }

FALLBACKS = {
    "costs": cost_fallback,
    "segments": segment_fallback,
    "recommendations": recommendation_fallback,
}
