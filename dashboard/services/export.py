"""
Export service: flat CSV projection of item-level analytics rows.
"""
import csv
import io
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional

# Column order of the exported file
EXPORT_COLUMNS = [
    "invoice_code",
    "issue_date",
    "provider_name",
    "provider_tax_id",
    "provider_type",
    "invoice_total",
    "material_code",
    "material_name",
    "category",
    "work_order",
    "item_date",
    "quantity",
    "unit_price",
    "total_price",
]


def format_cell(value) -> str:
    """
    Render one value for CSV output.

    Decimals keep their exact digits (no float conversion, no exponent);
    dates are ISO; None becomes an empty cell.
    """
    if value is None:
        return ""
    if isinstance(value, Decimal):
        text = format(value, "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text or "0"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def export_filename(tenant_id: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"matlytics_{tenant_id}_{now.strftime('%Y%m%d_%H%M%S')}.csv"


def render_csv(rows: Iterable[dict], columns: Optional[list[str]] = None) -> str:
    """Render export rows (as returned by AnalyticsService.get_export_rows) to CSV text."""
    columns = columns or EXPORT_COLUMNS
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(columns)
    for row in rows:
        writer.writerow([format_cell(row.get(col)) for col in columns])
    return buf.getvalue()


def write_csv(rows: Iterable[dict], path: Path, columns: Optional[list[str]] = None) -> int:
    """Write export rows to *path*. Returns the number of data rows written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    columns = columns or EXPORT_COLUMNS
    count = 0
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f, lineterminator="\n")
        writer.writerow(columns)
        for row in rows:
            writer.writerow([format_cell(row.get(col)) for col in columns])
            count += 1
    return count
