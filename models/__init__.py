from .extraction import ExtractedInvoiceRecord, ExtractedItem, ProviderInfo, ParsedRecord
from .catalog import ResolvedProvider, ResolvedMaterial, PriceChange
from .result import BatchJobReport, IngestionOutcome, InvoiceFailure, ParseFailure
from .analytics import (
    AnalyticsFilters, MaterialAnalytics, SupplierAnalytics, Page,
    MaterialFilterTotals, WorkOrderAnalytics,
)

__all__ = [
    "ExtractedInvoiceRecord", "ExtractedItem", "ProviderInfo", "ParsedRecord",
    "ResolvedProvider", "ResolvedMaterial", "PriceChange",
    "BatchJobReport", "IngestionOutcome", "InvoiceFailure", "ParseFailure",
    "AnalyticsFilters", "MaterialAnalytics", "SupplierAnalytics", "Page",
    "MaterialFilterTotals", "WorkOrderAnalytics",
]
