# margin_leakage/analysis/report_excel.py
"""Excel export of a normalized margin leakage report."""

import io
from typing import Any, Dict, List

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill, Alignment, Border, Side
from openpyxl.worksheet.worksheet import Worksheet

header_font = Font(bold=True, color="FFFFFF")
header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
section_font = Font(bold=True, size=12, color="2F5597")
insight_font = Font(bold=True, size=11, color="D83B01")
thin_border = Border(
    left=Side(style='thin'), right=Side(style='thin'),
    top=Side(style='thin'), bottom=Side(style='thin')
)

TABLES = [
    ("Product Losses", "top_product_losses",
     ["product_id", "loss_amt", "margin_pct", "revenue", "qty", "customers_impacted"]),
    ("Customer Losses", "top_customer_losses",
     ["customer_id", "loss_amt", "margin_pct", "revenue", "qty", "products_impacted"]),
    ("Below Cost Pairs", "product_customer_pairs_below_cost",
     ["product_id", "customer_id", "rows", "total_margin_amt"]),
    ("Remediation", "remediation_suggestions",
     ["type", "description", "impact_estimate", "confidence", "priority", "rationale", "effort"]),
]

def _autofit_ws(ws: Worksheet):
    for column in ws.columns:
        maxlen = 0
        col_letter = column[0].column_letter
        for cell in column:
            if cell.value is not None:
                maxlen = max(maxlen, len(str(cell.value)))
        ws.column_dimensions[col_letter].width = min(maxlen + 2, 50)

def _cell_value(value: Any) -> Any:
    if isinstance(value, (list, dict)):
        return str(value)
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    return value

def _write_header(ws: Worksheet, row: int, headers: List[str]):
    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=row, column=col, value=header)
        cell.font = header_font
        cell.fill = header_fill
        cell.border = thin_border
        cell.alignment = Alignment(horizontal="center")

def _write_table(ws: Worksheet, items: List[Dict[str, Any]], columns: List[str]):
    _write_header(ws, 1, columns)
    df = pd.DataFrame([i for i in items if isinstance(i, dict)], columns=columns)
    for r, values in enumerate(df.itertuples(index=False), start=2):
        for c, value in enumerate(values, start=1):
            cell = ws.cell(row=r, column=c, value=_cell_value(value))
            cell.border = thin_border
    if df.empty:
        ws.cell(row=2, column=1, value="No data")

def _write_summary(ws: Worksheet, report: Dict[str, Any]):
    meta = report.get("meta") or {}
    row = 1
    ws[f"A{row}"] = "MARGIN LEAKAGE REPORT"
    ws[f"A{row}"].font = Font(bold=True, size=16, color="2F5597")
    row += 2

    for label, value in [
        ["Run ID", report.get("runId") or meta.get("runId") or "N/A"],
        ["File ID", meta.get("fileId") or "N/A"],
        ["Completed At", meta.get("completedAt") or "N/A"],
        ["Analysis Type", meta.get("analysis_type") or "margin_leakage"],
    ]:
        ws[f"A{row}"] = label
        ws[f"B{row}"] = value
        ws[f"A{row}"].font = Font(bold=True)
        row += 1
    row += 1

    ws[f"A{row}"] = "SEVERITY SUMMARY"
    ws[f"A{row}"].font = section_font
    row += 1
    _write_header(ws, row, ["Severity", "Count"])
    row += 1
    for level, count in (report.get("severity_summary") or {}).items():
        ws.cell(row=row, column=1, value=level.title()).border = thin_border
        ws.cell(row=row, column=2, value=count).border = thin_border
        row += 1
    row += 1

    if report.get("insights"):
        ws[f"A{row}"] = "KEY INSIGHTS"
        ws[f"A{row}"].font = section_font
        row += 1
        for insight in report["insights"]:
            ws[f"A{row}"] = f"• {insight}"
            ws[f"A{row}"].font = insight_font
            row += 1

def build_report_workbook(report: Dict[str, Any]) -> bytes:
    """Workbook with a Summary sheet and one sheet per loss table, plus the SQL queries."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Summary"
    _write_summary(ws, report)
    _autofit_ws(ws)

    for title, key, columns in TABLES:
        ws = wb.create_sheet(title)
        _write_table(ws, report.get(key) or [], columns)
        _autofit_ws(ws)

    ws = wb.create_sheet("SQL Queries")
    _write_header(ws, 1, ["Check", "Query"])
    for r, (name, query) in enumerate((report.get("sql_queries") or {}).items(), start=2):
        ws.cell(row=r, column=1, value=name).border = thin_border
        cell = ws.cell(row=r, column=2, value=query)
        cell.border = thin_border
        cell.alignment = Alignment(wrap_text=True, vertical="top")
    _autofit_ws(ws)

    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()
