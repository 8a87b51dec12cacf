"""
Spreadsheet import/export, column mapping suggestion and status chart data
"""
import csv
import io
import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from openpyxl import Workbook, load_workbook

from models import ColumnMapping, ProspectRow, StatusCount

EXPORT_NAME = "Prospect Name"
EXPORT_COMPANY = "Prospect Company"
EXPORT_EMAIL = "Enriched Email"
EXPORT_LINKEDIN = "LinkedIn URL"
EXPORT_STATUS = "Status"

DEFAULT_HEADERS = ["Name", "Company", "Email", "Status"]

NAME_KEYWORDS = ["full name", "prospect name", "contact name", "name", "contact", "person"]
COMPANY_KEYWORDS = ["company", "organization", "organisation", "employer", "domain", "website", "account"]

STATUS_COLORS = {
    "deliverable": "#10B981",
    "valid": "#10B981",
    "completed": "#10B981",
    "success": "#10B981",
    "found": "#3B82F6",
    "undeliverable": "#EF4444",
    "invalid": "#EF4444",
    "failed": "#EF4444",
    "risky": "#F59E0B",
    "warning": "#F59E0B",
    "pending": "#8B5CF6",
    "processing": "#8B5CF6",
    "searching": "#8B5CF6",
    "unknown": "#64748B",
}

VERIFY_LABELS = {
    "deliverable": "Valid",
    "undeliverable": "Invalid",
    "risky": "Risky",
    "unknown": "Unknown",
    "failed": "Failed",
    "pending": "Pending",
    "processing": "Processing",
}


class SpreadsheetImportError(Exception):
    """The uploaded file could not be turned into records"""
    pass


def _cell_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


def _rows_to_records(rows: List[tuple]) -> Tuple[List[str], List[Dict[str, Any]]]:
    rows = [row for row in rows if row and any(cell not in (None, "") for cell in row)]
    if not rows:
        return [], []

    headers = [str(h).strip() if h not in (None, "") else f"col_{i}" for i, h in enumerate(rows[0])]
    records = []
    for row in rows[1:]:
        record = {}
        for i, header in enumerate(headers):
            record[header] = _cell_value(row[i] if i < len(row) else None)
        records.append(record)
    return headers, records


def read_spreadsheet(filename: str, content: bytes) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Parse an uploaded spreadsheet into headers and records

    Args:
        filename: Original file name, used to pick the parser
        content: Raw file bytes

    Returns:
        (headers, records) from the first sheet, first row being the header row

    Raises:
        SpreadsheetImportError: If the file is unreadable or holds no data rows
    """
    suffix = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""

    try:
        if suffix in ("xlsx", "xlsm"):
            wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
            ws = wb[wb.sheetnames[0]]
            rows = list(ws.iter_rows(values_only=True))
            wb.close()
        elif suffix in ("csv", "txt"):
            text = content.decode("utf-8-sig")
            rows = [tuple(r) for r in csv.reader(io.StringIO(text))]
        else:
            raise SpreadsheetImportError(f"Unsupported file type: {filename}")
    except SpreadsheetImportError:
        raise
    except Exception as e:
        logger.warning(f"Failed to parse {filename}: {e}")
        raise SpreadsheetImportError("Error parsing file. Ensure it's a valid XLSX/CSV.") from e

    headers, records = _rows_to_records(rows)
    if not records:
        raise SpreadsheetImportError("The uploaded file appears to be empty.")

    logger.info(f"Imported {len(records)} records with {len(headers)} columns from {filename}")
    return headers, records


def detect_email_header(headers: List[str]) -> str:
    return next((h for h in headers if "email" in h.lower()), "")


def _match_header(headers: List[str], keywords: List[str], exclude: str = "") -> str:
    lowered = {h: h.lower().strip() for h in headers if h != exclude}
    for keyword in keywords:
        for header, low in lowered.items():
            if low == keyword:
                return header
    for keyword in keywords:
        for header, low in lowered.items():
            if keyword in low and "email" not in low:
                return header
    return ""


def suggest_mapping_heuristic(headers: List[str]) -> ColumnMapping:
    """Keyword based guess of the name and company columns"""
    name_header = _match_header(headers, NAME_KEYWORDS)
    company_header = _match_header(headers, COMPANY_KEYWORDS, exclude=name_header)
    return ColumnMapping(name_header=name_header, company_header=company_header)


def resolve_mapping(suggested: Optional[ColumnMapping], headers: List[str], mode: str) -> ColumnMapping:
    """
    Turn a suggestion into a mapping over the literal headers of the file

    Suggested headers are matched case-insensitively; the email column is the
    first header mentioning "email". In verify mode name/company are left
    empty when the suggestion points them at the email column.
    """
    suggested = suggested or ColumnMapping()
    email_header = detect_email_header(headers)

    def literal(header: str) -> str:
        if not header:
            return ""
        return next((h for h in headers if h.lower() == header.lower()), "")

    name_header = literal(suggested.name_header)
    company_header = literal(suggested.company_header)

    if mode == "verify":
        if name_header and name_header == email_header:
            name_header = ""
        if company_header and company_header == email_header:
            company_header = ""

    return ColumnMapping(name_header=name_header, company_header=company_header, email_header=email_header)


def _field(record: Dict[str, Any], header: str) -> str:
    if not header:
        return ""
    value = record.get(header)
    return str(value).strip() if value not in (None, "") else ""


def apply_mapping(row: ProspectRow, mapping: Optional[ColumnMapping], mode: str) -> ProspectRow:
    """
    Re-derive name, company and email of a row from its source record

    Fields whose column is absent from the source record keep their current value.
    """
    if mapping is None or not row.original_data:
        return row

    data = row.original_data
    update: Dict[str, Any] = {}
    if mapping.name_header in data:
        update["name"] = _field(data, mapping.name_header)
    elif not mapping.name_header:
        update["name"] = ""
    if mapping.company_header in data:
        update["company"] = _field(data, mapping.company_header)
    elif not mapping.company_header:
        update["company"] = ""

    if mapping.email_header and mapping.email_header in data:
        update["email"] = _field(data, mapping.email_header) or None
    elif mode == "enrich" and not mapping.email_header:
        update["email"] = None

    return row.model_copy(update=update)


def build_rows(records: List[Dict[str, Any]], mapping: ColumnMapping, mode: str) -> List[ProspectRow]:
    """Create pending rows from imported records"""
    rows = []
    for index, record in enumerate(records):
        row = ProspectRow(
            id=str(index),
            name=_field(record, mapping.name_header),
            company=_field(record, mapping.company_header),
            email=_field(record, mapping.email_header) or None,
            status="pending",
            original_data=dict(record),
        )
        rows.append(row)
    return rows


def export_records(rows: List[ProspectRow]) -> List[Dict[str, Any]]:
    """Rows in the fixed export schema, original columns first"""
    return [
        {
            **row.original_data,
            EXPORT_NAME: row.name,
            EXPORT_COMPANY: row.company,
            EXPORT_EMAIL: row.email or "N/A",
            EXPORT_LINKEDIN: row.linkedin_url or "N/A",
            EXPORT_STATUS: row.status,
        }
        for row in rows
    ]


def export_json(rows: List[ProspectRow]) -> str:
    return json.dumps(export_records(rows), indent=2, default=str)


def export_xlsx(rows: List[ProspectRow]) -> bytes:
    """Rows in the export schema as an xlsx workbook with a "Results" sheet"""
    records = export_records(rows)

    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)

    wb = Workbook()
    ws = wb.active
    ws.title = "Results"
    ws.append(columns)
    for record in records:
        ws.append([record.get(col, "") for col in columns])

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def status_color(status: str) -> str:
    return STATUS_COLORS.get(status.lower(), "#8B5CF6")


def status_counts(mode: str, rows: List[ProspectRow]) -> List[StatusCount]:
    """Chart slices for the current rows; empty slices are left out"""
    if mode in ("enrich", "linkedin"):
        completed = sum(1 for r in rows if r.status in ("completed", "found"))
        not_found = sum(1 for r in rows if r.status == "not_found")
        failed = sum(1 for r in rows if r.status == "failed")
        pending = sum(1 for r in rows if r.status in ("pending", "processing", "searching"))

        slices = [
            StatusCount(
                name="Found" if mode == "linkedin" else "Email Found",
                value=completed,
                color="#3B82F6" if mode == "linkedin" else "#10B981",
            ),
            StatusCount(name="Not Found", value=not_found, color="#F59E0B"),
            StatusCount(name="Failed", value=failed, color="#EF4444"),
            StatusCount(name="Pending", value=pending, color="#8B5CF6"),
        ]
        return [s for s in slices if s.value > 0]

    counts: Dict[str, int] = {}
    for row in rows:
        key = row.status.lower()
        counts[key] = counts.get(key, 0) + 1

    return [
        StatusCount(
            name=VERIFY_LABELS.get(key, key.capitalize()),
            value=value,
            color=status_color(key),
        )
        for key, value in counts.items()
        if value > 0
    ]
