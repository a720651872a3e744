"""
Excel run report.

Creates a workbook with Summary, Ledger Entries, Orphan Transfers and
Warnings sheets. The report is for review only; the CSV/JSON export is
the interchange file.
"""

from datetime import datetime
from pathlib import Path
from typing import Any
import logging

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.worksheet.worksheet import Worksheet

from ..export.exporters import format_amount
from ..models.ledger import LedgerEntry, LegKind
from ..models.report import (
    AddressFetchFailure,
    MappingOverrideNotice,
    OrphanTransferWarning,
    RunSummary,
)
from ..models.transaction import TxStatus
from ..utils.exceptions import ReportGenerationError

logger = logging.getLogger(__name__)

# Style definitions
HEADER_FILL = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True)
GAS_FILL = PatternFill(start_color="FFEB9C", end_color="FFEB9C", fill_type="solid")
FAILED_FILL = PatternFill(start_color="FFC7CE", end_color="FFC7CE", fill_type="solid")
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)

ENTRY_HEADERS = [
    "Date",
    "Block",
    "Transaction Hash",
    "Status",
    "Description",
    "Account",
    "Commodity",
    "Amount",
    "Kind",
    "Log Index",
    "Label",
    "Category",
]


class ExcelReportGenerator:
    """Generates the Excel review workbook for an export run."""

    def __init__(self, date_format: str = "%Y-%m-%d"):
        self.date_format = date_format

    def generate_report(
        self,
        summary: RunSummary,
        entries: list[LedgerEntry],
        orphans: list[OrphanTransferWarning],
        overrides: list[MappingOverrideNotice],
        failures: list[AddressFetchFailure],
        output_path: Path,
    ) -> Path:
        """
        Generate the complete run report.

        Args:
            summary: Run summary
            entries: Exported ledger entries
            orphans: Orphan transfer warnings
            overrides: Mapping override notices
            failures: Addresses whose fetch failed
            output_path: Path for output file

        Returns:
            Path to generated report

        Raises:
            ReportGenerationError: If the workbook cannot be saved
        """
        logger.info(f"Generating Excel report: {output_path}")

        wb = Workbook()
        if wb.active:
            wb.remove(wb.active)

        self._create_summary_sheet(wb, summary)
        self._create_entries_sheet(wb, entries)
        self._create_orphan_sheet(wb, orphans)
        self._create_warnings_sheet(wb, overrides, failures)

        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            wb.save(output_path)
        except OSError as e:
            raise ReportGenerationError(f"Failed to save report {output_path}: {e}") from e

        logger.info(f"Report saved: {output_path}")
        return output_path

    def _create_summary_sheet(self, wb: Workbook, summary: RunSummary) -> None:
        """Create the summary sheet with run metrics."""
        ws = wb.create_sheet("Summary")

        ws["A1"] = "Arbitrum Export Summary"
        ws["A1"].font = Font(size=16, bold=True)
        ws.merge_cells("A1:D1")

        ws["A3"] = "Run Information"
        ws["A3"].font = Font(bold=True)

        run_info = [
            ("Run Started:", summary.run_started.strftime("%Y-%m-%d %H:%M:%S")),
            ("Config File:", summary.config_file_used or "Default"),
            ("Start Block:", summary.start_block),
            ("End Block:", summary.end_block if summary.end_block is not None else "latest"),
            ("Processing Time:", f"{summary.processing_time_seconds:.2f} seconds"),
        ]
        row = self._write_pairs(ws, run_info, start=4)

        row += 1
        ws[f"A{row}"] = "Record Counts"
        ws[f"A{row}"].font = Font(bold=True)
        counts = [
            ("Transactions Fetched:", summary.transactions_fetched),
            ("Token Transfers Fetched:", summary.token_transfers_fetched),
            ("Duplicates Dropped:", summary.duplicates_dropped),
            ("Ledger Entries:", summary.entries_built),
            ("Failed Transactions:", summary.failed_transactions),
            ("Token Transfers Skipped:", summary.tokens_skipped),
        ]
        row = self._write_pairs(ws, counts, start=row + 1)

        row += 1
        ws[f"A{row}"] = "Warnings"
        ws[f"A{row}"].font = Font(bold=True)
        warnings = [
            ("Orphan Transfer Groups:", summary.orphan_count),
            ("Mapping Overrides:", summary.override_count),
            ("Failed Addresses:", summary.failed_address_count),
        ]
        row = self._write_pairs(ws, warnings, start=row + 1)

        row += 1
        ws[f"A{row}"] = "Entries by Address"
        ws[f"A{row}"].font = Font(bold=True)
        row += 1
        for address in summary.addresses:
            ws[f"A{row}"] = address
            ws[f"B{row}"] = summary.entries_by_address.get(address, 0)
            row += 1

        ws.column_dimensions["A"].width = 46
        ws.column_dimensions["B"].width = 30

    def _write_pairs(self, ws: Worksheet, pairs: list[tuple[str, Any]], start: int) -> int:
        row = start
        for label, value in pairs:
            ws[f"A{row}"] = label
            ws[f"B{row}"] = value
            row += 1
        return row

    def _write_headers(self, ws: Worksheet, headers: list[str], row: int = 1) -> None:
        for col, header in enumerate(headers, start=1):
            cell = ws.cell(row=row, column=col, value=header)
            cell.fill = HEADER_FILL
            cell.font = HEADER_FONT
            cell.border = THIN_BORDER
            cell.alignment = Alignment(horizontal="center")

    def _create_entries_sheet(self, wb: Workbook, entries: list[LedgerEntry]) -> None:
        """One row per split, grouped by transaction."""
        ws = wb.create_sheet("Ledger Entries")
        self._write_headers(ws, ENTRY_HEADERS)

        row_num = 2
        for entry in entries:
            for leg in entry.legs:
                row_data = [
                    entry.block_time.strftime(self.date_format),
                    entry.block_number,
                    entry.hash,
                    entry.status.value,
                    entry.memo,
                    leg.account,
                    leg.currency,
                    format_amount(leg.amount),
                    leg.kind.value,
                    leg.log_index if leg.log_index is not None else "",
                    entry.label or "",
                    entry.category or "",
                ]
                for col, value in enumerate(row_data, start=1):
                    cell = ws.cell(row=row_num, column=col, value=value)
                    cell.border = THIN_BORDER
                    if entry.status == TxStatus.FAILED:
                        cell.fill = FAILED_FILL
                    elif leg.kind == LegKind.GAS:
                        cell.fill = GAS_FILL
                row_num += 1

        ws.freeze_panes = "A2"
        self._auto_fit_columns(ws)

    def _create_orphan_sheet(self, wb: Workbook, orphans: list[OrphanTransferWarning]) -> None:
        ws = wb.create_sheet("Orphan Transfers")
        headers = [
            "Transaction Hash",
            "Block",
            "Reason",
            "Token",
            "From",
            "To",
            "Raw Amount",
            "Log Index",
        ]
        self._write_headers(ws, headers)

        row_num = 2
        for orphan in orphans:
            for transfer in orphan.transfers:
                row_data = [
                    orphan.transaction_hash,
                    transfer.block_number,
                    orphan.reason,
                    transfer.token_symbol or transfer.token_address,
                    transfer.from_address,
                    transfer.to_address or "",
                    str(transfer.amount),
                    transfer.log_index if transfer.log_index is not None else "",
                ]
                for col, value in enumerate(row_data, start=1):
                    cell = ws.cell(row=row_num, column=col, value=value)
                    cell.border = THIN_BORDER
                row_num += 1

        self._auto_fit_columns(ws)

    def _create_warnings_sheet(
        self,
        wb: Workbook,
        overrides: list[MappingOverrideNotice],
        failures: list[AddressFetchFailure],
    ) -> None:
        """Mapping overrides followed by failed addresses."""
        ws = wb.create_sheet("Warnings")

        ws["A1"] = "Warnings"
        ws["A1"].font = Font(size=14, bold=True)
        ws["A2"] = f"Generated At: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"

        row = 4
        ws[f"A{row}"] = "Mapping Overrides"
        ws[f"A{row}"].font = Font(bold=True)
        row += 1
        self._write_headers(ws, ["Address", "Field", "Previous", "New", "Source"], row=row)
        row += 1
        for notice in overrides:
            values = [
                notice.address,
                notice.field,
                notice.previous_value,
                notice.new_value,
                notice.source,
            ]
            for col, value in enumerate(values, start=1):
                ws.cell(row=row, column=col, value=value)
            row += 1

        row += 1
        ws[f"A{row}"] = "Failed Addresses"
        ws[f"A{row}"].font = Font(bold=True)
        row += 1
        self._write_headers(ws, ["Address", "Error", "Resume Cursor"], row=row)
        row += 1
        for failure in failures:
            values = [failure.address, failure.error, str(failure.cursor or "")]
            for col, value in enumerate(values, start=1):
                ws.cell(row=row, column=col, value=value)
            row += 1

        self._auto_fit_columns(ws)

    def _auto_fit_columns(self, ws: Worksheet) -> None:
        """Auto-fit column widths based on content."""
        for column_cells in ws.columns:
            max_length = 0
            column = column_cells[0].column_letter

            for cell in column_cells:
                if cell.value is not None:
                    max_length = max(max_length, len(str(cell.value)))

            ws.column_dimensions[column].width = min(max_length + 2, 70)
