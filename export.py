"""
Flagship School Plan - Export Layer
Turns a FinancialSummary into named sheets of flat rows and writes them
out as an .xlsx workbook (one tab per sheet) or a ZIP of CSVs.
"""
import io
import logging
import os
import zipfile
from datetime import date
from typing import Dict, List, Tuple

import pandas as pd
from openpyxl.utils import get_column_letter

from model import FinancialSummary, calculate_per_student, projection_to_frame

logger = logging.getLogger(__name__)

MAX_SHEET_NAME = 31

Sheet = Tuple[str, List[Dict]]

# ── Formatting ──────────────────────────────────────────────

def format_currency(value, symbol="R$"):
    s = f"{abs(value):,.0f}".replace(",", ".")
    return f"-{symbol} {s}" if value < 0 else f"{symbol} {s}"


def format_percent(value, decimals=1):
    s = f"{value * 100:.{decimals}f}".replace(".", ",")
    return f"{s}%"

# ── Sheets ──────────────────────────────────────────────────

def _rows(df: pd.DataFrame) -> List[Dict]:
    return df.to_dict(orient="records")


def build_export_sheets(result: FinancialSummary, sensitivity: pd.DataFrame = None,
                        scenarios: pd.DataFrame = None) -> List[Sheet]:
    proj = projection_to_frame(result.projection)
    rev_cols = ["year"] + [c for c in proj.columns if c.startswith("revenue_")]
    cost_cols = ["year"] + [c for c in proj.columns if c.startswith("costs_")]
    main_cols = ["year", "students_flagship", "students_franchise", "students_adoption",
                 "students_total", "franchise_count", "revenue_total", "costs_total", "ebitda",
                 "ebitda_margin", "capex", "taxes", "net_income", "free_cash_flow"]

    s = result.summary
    summary_rows = [
        {"metric": "CAPEX scenario", "value": s.capex_scenario["name"]},
        {"metric": "Equity investment", "value": s.capex_scenario["equity_investment"]},
        {"metric": "IRR", "value": s.irr},
        {"metric": "IRR converged", "value": s.irr_converged},
        {"metric": "NPV", "value": s.npv},
        {"metric": "Payback period (years)", "value": s.payback_period},
        {"metric": "Cumulative EBITDA", "value": s.cumulative_ebitda},
        {"metric": "Cumulative free cash flow", "value": s.cumulative_fcf},
        {"metric": "Year 10 revenue", "value": s.year10_revenue},
        {"metric": "Year 10 EBITDA", "value": s.year10_ebitda},
        {"metric": "Year 10 students", "value": s.year10_students},
        {"metric": "Flagship break-even month", "value": s.flagship_breakeven_month},
    ]
    sheets = [
        ("Projection", _rows(proj[main_cols])),
        ("Revenue", _rows(proj[rev_cols])),
        ("Costs", _rows(proj[cost_cols])),
        ("Per Student", _rows(calculate_per_student(result.projection))),
        ("Summary", summary_rows),
        ("Flagship Break-even", _rows(result.flagship_breakeven.monthly)),
    ]
    if sensitivity is not None:
        sheets.append(("Sensitivity", _rows(sensitivity)))
    if scenarios is not None:
        sheets.append(("Scenario Comparison", _rows(scenarios)))
    return sheets

# ── Excel ───────────────────────────────────────────────────

def _autosize(ws, df):
    for i, col in enumerate(df.columns, start=1):
        width = max([len(str(col))] + [len(str(v)) for v in df[col]])
        ws.column_dimensions[get_column_letter(i)].width = width + 2


def _write_workbook(sheets: List[Sheet], target):
    if not sheets:
        raise ValueError("Nothing to export: no sheets given")
    used = set()
    with pd.ExcelWriter(target, engine="openpyxl") as writer:
        for name, rows in sheets:
            tab = str(name)[:MAX_SHEET_NAME]
            if tab in used:
                raise ValueError(f"Duplicate sheet name after truncation: {tab!r}")
            used.add(tab)
            df = pd.DataFrame(rows)
            df.to_excel(writer, sheet_name=tab, index=False)
            _autosize(writer.sheets[tab], df)


def workbook_bytes(sheets: List[Sheet]) -> bytes:
    buf = io.BytesIO()
    _write_workbook(sheets, buf)
    return buf.getvalue()


def export_to_excel(sheets: List[Sheet], filename="export", directory=None, today=None) -> str:
    today = today or date.today()
    path = os.path.join(directory or ".", f"{filename}_{today.isoformat()}.xlsx")
    _write_workbook(sheets, path)
    logger.info("Wrote %d sheet(s) to %s", len(sheets), path)
    return path

# ── CSV/ZIP ─────────────────────────────────────────────────

def export_all_to_zip(sheets: List[Sheet], prefix="projection") -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, rows in sheets:
            slug = str(name).lower().replace(" ", "_").replace("-", "_")
            zf.writestr(f"{prefix}_{slug}.csv", pd.DataFrame(rows).to_csv(index=False))
    return buf.getvalue()
