"""
reporter.py — Recovery Worklist Workbook.

Produces an Excel workbook the collections / account management team works
from. Open leaks are listed highest priority first with colour-coded rows,
frozen headers and an auto-filter, behind a cover sheet of KPI tiles.

Sheets:
    1. Summary     — KPI tiles and amount at risk by leak type
    2. Open Leaks  — one row per open leak with recommended action
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter
from openpyxl.utils.dataframe import dataframe_to_rows

logger = logging.getLogger(__name__)

COLOURS = {
    "navy":          "1F4E79",
    "dark_red":      "C00000",
    "dark_green":    "375623",
    "gold":          "BF8F00",
    "light_grey":    "F2F2F2",
    "white":         "FFFFFF",
    "critical_row":  "FFCCCC",
    "high_row":      "FFE5CC",
    "medium_row":    "FFFFE0",
    "low_row":       "E2EFDA",
}

PRIORITY_ROW_COLOURS = {
    "critical": COLOURS["critical_row"],
    "high":     COLOURS["high_row"],
    "medium":   COLOURS["medium_row"],
    "low":      COLOURS["low_row"],
}

LEAK_TYPE_DISPLAY = {
    "missing_payment":        "Missing Payment",
    "under_billing":          "Under-Billing",
    "failed_renewal":         "Failed Renewal",
    "uncollected_receivable": "Uncollected Receivable",
}

THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)


def _fill(hex_colour: str) -> PatternFill:
    return PatternFill(fill_type="solid", fgColor=hex_colour)


def _header_font() -> Font:
    return Font(name="Calibri", bold=True, color=COLOURS["white"], size=11)


def _auto_fit_columns(ws, min_width: int = 10, max_width: int = 60) -> None:
    """Set each column's width from its longest rendered value."""
    for col in ws.columns:
        longest = max((len(str(cell.value)) for cell in col if cell.value is not None), default=0)
        ws.column_dimensions[get_column_letter(col[0].column)].width = min(
            max(longest + 4, min_width), max_width
        )


def _write_kpi_tile(ws, row: int, col: int, label: str, value: str, colour: str) -> None:
    label_cell = ws.cell(row=row, column=col, value=label)
    label_cell.fill = _fill(colour)
    label_cell.font = _header_font()
    label_cell.alignment = Alignment(horizontal="center", vertical="center")
    label_cell.border = THIN_BORDER

    value_cell = ws.cell(row=row + 1, column=col, value=value)
    value_cell.font = Font(name="Calibri", bold=True, size=16, color=colour)
    value_cell.alignment = Alignment(horizontal="center", vertical="center")
    value_cell.fill = _fill(COLOURS["light_grey"])
    value_cell.border = THIN_BORDER


def _build_summary_sheet(
    ws,
    summary: dict[str, Any],
    company_name: str,
    run_date: str,
) -> None:
    """KPI tiles in rows 4–5, amount at risk by leak type from row 7."""
    ws.sheet_properties.tabColor = COLOURS["navy"]
    ws.row_dimensions[1].height = 30

    ws.merge_cells("A1:G1")
    title = ws["A1"]
    title.value = "REVENUE LEAK RECOVERY WORKLIST"
    title.font = Font(name="Calibri", bold=True, size=16, color=COLOURS["white"])
    title.fill = _fill(COLOURS["navy"])
    title.alignment = Alignment(horizontal="center", vertical="center")

    ws.merge_cells("A2:G2")
    sub = ws["A2"]
    sub.value = f"Company: {company_name}  |  Report Date: {run_date}"
    sub.font = Font(name="Calibri", italic=True, size=10, color=COLOURS["navy"])
    sub.alignment = Alignment(horizontal="center")

    currency = summary["currency"]
    tiers = summary["priority_breakdown"]
    tiles = [
        ("AMOUNT AT RISK", f"{currency} {summary['total_amount']:,.2f}", COLOURS["dark_red"]),
        ("OPEN LEAKS",     f"{summary['total_leaks']:,}",                COLOURS["navy"]),
        ("CRITICAL",       str(tiers.get("Critical", 0)),                "CC0000"),
        ("HIGH",           str(tiers.get("High", 0)),                    "C65911"),
        ("MEDIUM",         str(tiers.get("Medium", 0)),                  COLOURS["gold"]),
        ("LOW",            str(tiers.get("Low", 0)),                     COLOURS["dark_green"]),
        ("OLDEST (DAYS)",  str(summary["oldest_aging"]),                 COLOURS["navy"]),
    ]
    for i, (label, value, colour) in enumerate(tiles, start=1):
        _write_kpi_tile(ws, row=4, col=i, label=label, value=value, colour=colour)
    ws.row_dimensions[5].height = 30

    ws.cell(row=7, column=1, value="AMOUNT AT RISK BY LEAK TYPE").font = Font(
        name="Calibri", bold=True, size=12, color=COLOURS["navy"]
    )
    for col_i, header in enumerate(["Leak Type", "Open Leaks", f"Amount ({currency})"], start=1):
        cell = ws.cell(row=8, column=col_i, value=header)
        cell.fill = _fill(COLOURS["navy"])
        cell.font = _header_font()
        cell.border = THIN_BORDER

    for row_i, (leak_type, data) in enumerate(summary["by_type"].items(), start=9):
        values = [
            LEAK_TYPE_DISPLAY.get(leak_type, leak_type),
            int(data.get("count", 0)),
            round(float(data.get("amount", 0.0)), 2),
        ]
        for col_i, value in enumerate(values, start=1):
            cell = ws.cell(row=row_i, column=col_i, value=value)
            cell.fill = _fill(COLOURS["light_grey"])
            cell.border = THIN_BORDER
            if col_i == 3:
                cell.number_format = "#,##0.00"

    _auto_fit_columns(ws)


def _build_leaks_sheet(ws, leaks: pd.DataFrame) -> None:
    """One row per open leak, coloured by priority."""
    ws.sheet_properties.tabColor = COLOURS["dark_red"]

    columns = {
        "priority":           "Priority",
        "leak_type":          "Leak Type",
        "source_key":         "Reference",
        "amount":             "Amount",
        "currency":           "Currency",
        "confidence":         "Confidence",
        "aging":              "Aging (days)",
        "status":             "Status",
        "root_cause":         "Root Cause",
        "recommended_action": "Recommended Action",
        "detected_at":        "Detected",
    }
    display = leaks[list(columns)].copy()
    display["leak_type"] = display["leak_type"].map(
        lambda t: LEAK_TYPE_DISPLAY.get(t, t)
    )
    # Under-billing and renewal leaks carry no aging; write blanks, not NaN
    display = display.astype(object).where(display.notna(), None)
    display = display.rename(columns=columns)
    headers = list(display.columns)

    for col_i, header in enumerate(headers, start=1):
        cell = ws.cell(row=1, column=col_i, value=header)
        cell.fill = _fill(COLOURS["dark_red"])
        cell.font = _header_font()
        cell.alignment = Alignment(horizontal="center", wrap_text=True)
        cell.border = THIN_BORDER
    ws.freeze_panes = "A2"

    for row_i, row in enumerate(dataframe_to_rows(display, index=False, header=False), start=2):
        fill = _fill(PRIORITY_ROW_COLOURS.get(str(row[0]), COLOURS["light_grey"]))
        for col_i, value in enumerate(row, start=1):
            cell = ws.cell(row=row_i, column=col_i, value=value)
            cell.fill = fill
            cell.border = THIN_BORDER
            if headers[col_i - 1] == "Amount":
                cell.number_format = "#,##0.00"

    ws.auto_filter.ref = f"A1:{get_column_letter(len(headers))}1"
    _auto_fit_columns(ws)


def generate_worklist(
    leaks: pd.DataFrame,
    summary: dict[str, Any],
    cfg: dict[str, Any],
    company_name: str,
) -> Path:
    """Write the recovery worklist workbook to the configured output directory.

    Args:
        leaks: Open leaks from scorer.leaks_frame().
        summary: Output of scorer.build_leak_summary().
        cfg: Loaded configuration (uses paths.output_dir / paths.report_filename).
        company_name: Tenant name for the report header and file name.

    Returns:
        Path to the generated .xlsx file.
    """
    run_date = datetime.today().strftime("%Y-%m-%d")
    output_dir = Path(cfg["paths"]["output_dir"])
    output_dir.mkdir(parents=True, exist_ok=True)

    slug = "".join(ch if ch.isalnum() else "_" for ch in company_name).strip("_").lower()
    filename = cfg["paths"]["report_filename"].format(date=run_date)
    output_path = output_dir / f"{slug}_{filename}" if slug else output_dir / filename

    wb = Workbook()
    wb.remove(wb.active)

    _build_summary_sheet(wb.create_sheet("Summary"), summary, company_name, run_date)
    _build_leaks_sheet(wb.create_sheet("Open Leaks"), leaks)
    logger.info("Built worklist sheets (%d open leaks)", len(leaks))

    wb.save(output_path)
    logger.info("Recovery worklist saved to %s", output_path)
    return output_path
