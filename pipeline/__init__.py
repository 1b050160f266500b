from .analytics import AnalyticsService
from .batch_parser import StreamingBatchParser, iter_batch_records
from .database import Database
from .ingestion import InvoiceIngestor
from .material_resolver import MaterialResolver
from .price_alerts import PriceAlertPolicy
from .processor import IngestionService
from .provider_resolver import ProviderResolver

__all__ = [
    "AnalyticsService", "StreamingBatchParser", "iter_batch_records",
    "Database", "InvoiceIngestor", "MaterialResolver",
    "PriceAlertPolicy", "IngestionService", "ProviderResolver",
]
