"""
Dashboard business logic services.
"""
from .export import (
    EXPORT_COLUMNS,
    export_filename,
    format_cell,
    render_csv,
    write_csv,
)

__all__ = [
    "EXPORT_COLUMNS",
    "export_filename",
    "format_cell",
    "render_csv",
    "write_csv",
]
