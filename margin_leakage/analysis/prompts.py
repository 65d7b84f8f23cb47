# margin_leakage/analysis/prompts.py
"""Prompt builders for the margin steps, the combine merge and the rule checks."""

import json
from typing import Any, Dict, List, Optional

Row = Dict[str, str]


def dataset_json(columns: List[str], rows: List[Row]) -> str:
    return json.dumps({"columns": columns, "data": rows}, indent=2)


# ===========================
# Margin pipeline steps
# ===========================
def pricing_prompt(columns: List[str], sample: List[Row], total_rows: int, params: Dict[str, Any]) -> str:
    custom = str(params.get("customPrompt") or "").strip()
    if custom:
        return custom
    return f"""You are an expert pricing analyst. Analyze the pricing structure and discount patterns from this ACTUAL dataset.

DATASET COLUMNS: {json.dumps(columns)}
DATASET SAMPLE ({len(sample)} rows from {total_rows} total):
{dataset_json(columns, sample)}

FIELDS TO ANALYZE: {json.dumps(params.get("analyze_fields") or [])}
PRICE THRESHOLDS: {json.dumps(params.get("price_thresholds") or {})}

ANALYSIS REQUIREMENTS:
1. Calculate REAL pricing metrics from the actual data
2. Identify discount patterns and anomalies
3. Find products with excessive discounts
4. Analyze price-cost relationships
5. Provide specific insights based on actual numbers

CRITICAL: Use ONLY the actual data provided. Calculate real averages, identify real products with issues.

Return ONLY valid JSON in this exact format:
{{
  "total_products": <actual count from data>,
  "avg_list_price": <calculated from actual list_price values>,
  "avg_net_price": <calculated from actual net_price values>,
  "avg_discount_pct": <calculated from actual data>,
  "price_range": {{"min": <actual minimum price>, "max": <actual maximum price>}},
  "discount_distribution": {{"0-10%": <count>, "10-25%": <count>, "25-50%": <count>, "50%+": <count>}},
  "high_discount_products": [
    {{"product_id": "<actual product ID>", "list_price": <value>, "net_price": <value>, "discount_pct": <calculated>, "quantity": <value if available>}}
  ],
  "pricing_insights": ["<specific insight about pricing patterns>", "<discount anomalies>", "<actionable recommendation>"],
  "sql": "SELECT product_id, list_price, net_price, (list_price - net_price) / list_price * 100 AS discount_pct FROM pricing_data WHERE (list_price - net_price) / list_price > 0.25 ORDER BY discount_pct DESC LIMIT 50",
  "samples": [<5-10 actual rows illustrating the discount patterns>]
}}"""


def costs_prompt(columns: List[str], sample: List[Row], total_rows: int, params: Dict[str, Any]) -> str:
    return f"""Analyze the cost and margin structure of this dataset for margin leakage detection:

Data:
{dataset_json(columns, sample)}

Focus on cost fields: {json.dumps(params.get("cost_fields") or [])}
Margin thresholds: {json.dumps(params.get("margin_thresholds") or {})}

Calculate margins as: (net_price - cost) / net_price * 100

Provide detailed cost margin analysis in this JSON format:
{{
  "total_products": number,
  "avg_margin_pct": number,
  "negative_margin_count": number,
  "below_target_count": number,
  "margin_distribution": {{"negative": count, "0-10%": count, "10-30%": count, "30%+": count}},
  "worst_performers": [{{"product_id": "...", "margin_pct": -5, "revenue_impact": 1000, "cost": 100, "net_price": 95}}],
  "cost_insights": ["insight1", "insight2", "insight3"],
  "sql": "SELECT query to find products with negative or low margins",
  "samples": [{{"product_id": "...", "cost": 80, "net_price": 75, "margin_pct": -6.67}}]
}}"""


def leakage_prompt(columns: List[str], sample: List[Row], total_rows: int, params: Dict[str, Any]) -> str:
    return f"""You are an expert revenue optimization analyst. Identify ALL margin leakage instances in this ACTUAL dataset.

DATASET COLUMNS: {json.dumps(columns)}
DATASET SAMPLE ({len(sample)} rows from {total_rows} total):
{dataset_json(columns, sample)}

LEAKAGE DETECTION RULES:
{json.dumps(params.get("leakage_rules") or [])}
PRIORITY THRESHOLD (total $ impact): {params.get("priority_threshold")}

ANALYSIS REQUIREMENTS:
1. Find EVERY instance where products are sold below cost (net_price < cost)
2. Identify excessive discounts that erode margins
3. Calculate the ACTUAL financial impact per instance
4. Group leakage by type and severity
5. Identify specific product-customer pairs with issues

CRITICAL: Use ONLY actual data from the dataset. Extract real product IDs, customer IDs, prices, and costs. Calculate real loss amounts.

Return ONLY valid JSON in this exact format:
{{
  "leakage_instances": <actual count of margin leaks found>,
  "revenue_impact": <total $ lost, calculated from actual data>,
  "leakage_types": {{
    "below_cost_sales": {{"count": <count where net_price < cost>, "impact": <$ lost>}},
    "excessive_discounts": {{"count": <count where discount > 50%>, "impact": <$ lost>}},
    "low_margin_products": {{"count": <count where margin < 5%>, "impact": <$ at risk>}}
  }},
  "top_leaks": [
    {{
      "product_id": "<actual product ID>",
      "customer_id": "<actual customer ID>",
      "leak_type": "<below_cost_sale|excessive_discount|low_margin>",
      "net_price": <value>,
      "cost": <value>,
      "list_price": <value if available>,
      "discount_pct": <calculated>,
      "loss_per_unit": <cost - net_price>,
      "quantity": <value>,
      "total_impact": <loss_per_unit * quantity>
    }}
  ],
  "insights": ["<leakage pattern>", "<which products/customers leak most>", "<root cause>"],
  "sql": "SELECT product_id, customer_id, net_price, cost, quantity, (cost - net_price) * quantity AS total_loss FROM pricing_data WHERE net_price < cost OR (list_price - net_price) / list_price > 0.5 ORDER BY total_loss DESC LIMIT 100",
  "samples": [<10-20 actual rows showing margin leakage>]
}}"""


def segments_prompt(columns: List[str], sample: List[Row], total_rows: int, params: Dict[str, Any]) -> str:
    return f"""You are an expert commercial analyst. Break down margin performance by segment for this ACTUAL dataset.

DATASET COLUMNS: {json.dumps(columns)}
DATASET SAMPLE ({len(sample)} rows from {total_rows} total):
{dataset_json(columns, sample)}

SEGMENT FIELDS: {json.dumps(params.get("segment_fields") or [])}
ANALYSIS TYPE: {params.get("analysis_type")}

ANALYSIS REQUIREMENTS:
1. Group rows by the segment fields that exist in the data
2. Compute revenue, cost, margin % and below-cost loss per segment
3. Rate every segment's leakage severity as high, medium or low
4. Name the segments that drive most of the leakage

Return ONLY valid JSON in this exact format:
{{
  "segments_analyzed": <number of segments>,
  "segment_field": "<field used for grouping>",
  "segments": [
    {{"segment": "<value>", "revenue": <number>, "cost": <number>, "margin_pct": <number>, "leakage_amount": <number>, "transactions": <count>, "severity": "<high|medium|low>"}}
  ],
  "severity_summary": {{"high": <count>, "medium": <count>, "low": <count>}},
  "top_customer_losses": [{{"customer_id": "<id>", "loss_amt": <number>, "transactions": <count>}}],
  "insights": ["<segment insight>", "<segment insight>"],
  "sql": "SELECT customer_segment, SUM(net_price * quantity) AS revenue, SUM((net_price - cost) * quantity) AS margin FROM pricing_data GROUP BY customer_segment ORDER BY margin ASC"
}}"""


def recommendations_prompt(columns: List[str], sample: List[Row], total_rows: int, params: Dict[str, Any]) -> str:
    return f"""Generate actionable recommendations to improve margins based on this data:

Data:
{dataset_json(columns, sample)}

Recommendation types: {json.dumps(params.get("recommendation_types") or [])}

Focus on specific, actionable recommendations that can plug margin leaks.

Provide recommendations in this JSON format:
{{
  "recommendations_count": number,
  "priority_actions": [
    {{"action": "Increase prices for Product P015 by 15%", "rationale": "Currently selling below cost to 5 customers", "impact": "Recover $2,500 monthly", "priority": "high", "category": "pricing_optimization"}}
  ],
  "quick_wins": [
    {{"action": "Stop selling Product P020 below $50", "impact": "$1,200 immediate savings", "effort": "low"}}
  ],
  "insights": ["Focus on Enterprise segment pricing", "Review cost structure for electronics"],
  "sql": "SELECT query for implementation tracking"
}}"""


# ===========================
# Combine
# ===========================
COMBINE_INSTRUCTIONS = """INSTRUCTIONS:
1. Analyze and standardize column names across all datasets
2. Infer relationships between datasets
3. Combine all data into a single dataset
4. Add calculated fields where appropriate
5. OUTPUT ONLY AS A SINGLE JSON ARRAY OF OBJECTS
6. Ensure the JSON is complete and well-formatted
7. IMPORTANT: Return minimal JSON without formatting or explanations

COLUMN STANDARDIZATION PRINCIPLES:
- Apply consistent casing (PascalCase)
- Resolve abbreviations ("Qty" -> "Quantity")
- Normalize date formats
- Handle synonymous terms
- Correct common misspellings
- Remove special characters and spaces"""


def combine_prompt(dataset_blocks: List[str], join_type: Optional[str] = None,
                   custom_prompt: Optional[str] = None) -> str:
    prompt = "COMBINE THESE DATASETS INTO A SINGLE COMBINED DATASET:\n"
    prompt += "\n\n".join(dataset_blocks)
    prompt += "\n\n" + COMBINE_INSTRUCTIONS
    if join_type:
        prompt += f"\n\nJOIN REQUIREMENT: Use {join_type}"
    if custom_prompt:
        prompt += f"\n\nUSER SPECIFIC REQUIREMENT: {custom_prompt}"
    return prompt


# ===========================
# Free-form analysis and rule checks
# ===========================
DEFAULT_ANALYZE_PROMPT = (
    "Analyze this CRM data and provide insights on customer trends, "
    "opportunities, and key patterns. Include actionable recommendations."
)


def analyze_prompt(columns: List[str], rows: List[Row], custom_prompt: Optional[str] = None) -> str:
    return f"{custom_prompt or DEFAULT_ANALYZE_PROMPT}\n\nData:\n{dataset_json(columns, rows)}"


def logical_prompt(columns: List[str], rows: List[Row], rules: List[str]) -> str:
    return f"""You are a data quality and logical-insights engine. The caller provides:
- a rules list (each rule is a concise logical condition, e.g. "net_price<=0", "discount_pct>100", or a foreign-key rule "fk:product_id->products.product_id")
- a dataset (columns and rows in JSON). Only the included rows are provided; do not assume more.

Task:
1. Apply the given rules to the provided dataset and produce human-readable insights (short sentences).
2. For FK rules, produce a representative SQL query that would find missing references.
3. Provide up to 5 sample rows that illustrate each violation (row objects with column names as keys).
4. ONLY output valid JSON, NOTHING ELSE. The JSON MUST follow this exact shape:

{{"status": "success", "insights": ["..."], "sql": "SELECT ... (or empty string)", "samples": [{{"colA": "..."}}]}}

If you cannot apply a rule, explain it in "insights" but still return the object above with status "success".

Dataset:
{dataset_json(columns, rows)}

Rules:
{json.dumps(rules, indent=2)}

Return ONLY the JSON object exactly as specified. Do not include markdown, commentary, or extra text."""


def outliers_prompt(columns: List[str], rows: List[Row], column: str, methods: List[str],
                    thresholds: Dict[str, Any]) -> str:
    return "\n".join([
        "You are a rigorous data analyst specialized in detecting numeric outliers for a specified column.",
        "Input provided:",
        f'- column: "{column}"',
        f"- methods: {json.dumps(methods)}",
        f"- thresholds: {json.dumps(thresholds)}",
        '- dataset: JSON with "columns" (array) and "data" (array of row objects).',
        "",
        "Task (MANDATORY):",
        "1) Apply the requested methods (percentile, zscore, business thresholds) to the column.",
        '2) Return `outlier_counts` with keys such as ">50_pct", ">=90_pct", "zscore_>3".',
        "3) Provide a short `insights` array (2-4 items) summarizing findings.",
        "4) Provide up to 10 `samples` (row objects) that exemplify the outliers.",
        "5) Provide a representative `sql` string to fetch these rows from a table named `transactions`.",
        "",
        "Output rules:",
        "Return ONLY a single JSON object with EXACT keys: status, outlier_counts, insights, sql, samples.",
        '{"status":"success","outlier_counts":{">50_pct":0,">=90_pct":0,"zscore_>3":0},"insights":["..."],"sql":"SELECT ...","samples":[]}',
        "",
        "If you cannot compute a value, use 0 for counts, empty string for sql, and empty array for samples.",
        "",
        f"Dataset: {json.dumps({'columns': columns, 'data': rows})}",
        "",
        "Return ONLY the single-line JSON object.",
    ])
