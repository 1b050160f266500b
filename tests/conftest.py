"""
Pytest configuration and shared fixtures for the matlytics test suite.
"""
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="matlytics_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> "Config":
    """Provide a test configuration with isolated directories."""
    from config import Config

    config = Config()
    # Override paths to use temp directory
    config.output_dir = temp_dir / "output"
    config.export_dir = temp_dir / "output" / "export"
    config.upload_dir = temp_dir / "output" / "uploads"
    config.db_path = temp_dir / "output" / "matlytics.db"
    config.ensure_output_dir()

    config.tenant_id = "test-tenant"
    config.price_alert_threshold = 5.0
    config.tax_id_country_prefix = "ES"
    config.name_match_min_score = 0
    config.transaction_timeout_seconds = 5
    return config


@pytest.fixture
def test_db(test_config) -> "Database":
    """Provide a test database instance."""
    from pipeline.database import Database
    return Database(test_config.db_path, timeout=test_config.transaction_timeout_seconds)


@pytest.fixture
def sample_invoice() -> dict:
    """Return a sample invoice payload as the extraction service emits it."""
    return {
        "invoiceCode": "FAC-2024-001",
        "issueDate": "2024-03-15",
        "provider": {
            "name": "Materiales Garcia SL",
            "cif": "B-12345678",
            "email": "pedidos@garcia.example",
        },
        "items": [
            {
                "materialName": "Cemento Portland 25kg",
                "materialCode": "CEM-001",
                "quantity": 10,
                "unitPrice": 3.535,
                "workOrder": "OT 2024 15",
                "category": "Cemento",
            },
        ],
        "totalAmount": 35.35,
    }


@pytest.fixture
def sample_record(sample_invoice) -> "ExtractedInvoiceRecord":
    """The sample invoice validated into an ExtractedInvoiceRecord."""
    from decimal import Decimal
    from models.extraction import ExtractedInvoiceRecord

    payload = json.loads(json.dumps(sample_invoice), parse_float=Decimal)
    return ExtractedInvoiceRecord.model_validate(payload)


def _make_record(
    invoice_code: str,
    issue_date: str,
    items: list[dict],
    tax_id: str = "B12345678",
    provider_name: str = "Materiales Garcia SL",
) -> "ExtractedInvoiceRecord":
    """Build an ExtractedInvoiceRecord from compact test data."""
    from decimal import Decimal
    from models.extraction import ExtractedInvoiceRecord

    payload = {
        "invoiceCode": invoice_code,
        "issueDate": issue_date,
        "provider": {"name": provider_name, "taxId": tax_id},
        "items": items,
    }
    payload = json.loads(json.dumps(payload), parse_float=Decimal)
    return ExtractedInvoiceRecord.model_validate(payload)


def _result_line(invoice: dict, key: str = "req-1") -> str:
    """Wrap an invoice payload the way a batch result line carries it."""
    return json.dumps({"key": key, "response": {"text": json.dumps(invoice)}})


@pytest.fixture
def make_record():
    """Factory for ExtractedInvoiceRecord instances."""
    return _make_record


@pytest.fixture
def result_line():
    """Factory for batch result lines wrapping an invoice payload."""
    return _result_line


@pytest.fixture
def write_jsonl(temp_dir: Path):
    """Write a list of raw lines to a .jsonl file and return its path."""
    def _write(lines: list[str], name: str = "results.jsonl") -> Path:
        path = temp_dir / name
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
    return _write


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
