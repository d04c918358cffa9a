"""
Pytest configuration and shared fixtures for the invoice pipeline test suite.
"""
import asyncio
import os
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from models.extraction import ExtractionOptions, ProviderOutput
from models.invoice import LineItem, ParsedInvoice
from pipeline.errors import PERMANENT, TRANSIENT, ProviderError
from pipeline.providers import ProviderAdapter

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
os.chdir(PROJECT_ROOT)


class FakeAdapter(ProviderAdapter):
    """
    Scripted provider: each call consumes the next response.

    A response is a fields dict (success), a ProviderError (raised), or the
    string "hang" (never returns, so the orchestrator timeout fires).  The
    last response repeats once the script runs out.  `tokens` is the
    (input, output) usage reported with every successful response.
    """

    def __init__(self, name: str, *responses, confidence=None, field_confidences=None,
                 cost_per_1k=0.0, tokens=None):
        self._name = name
        self.responses = list(responses)
        self.confidence = confidence
        self.field_confidences = field_confidences or {}
        self.cost_per_1k = cost_per_1k
        self.tokens = tokens
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    async def extract(self, text: str, options: ExtractionOptions) -> ProviderOutput:
        self.calls.append(text)
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if response == "hang":
            await asyncio.sleep(3600)
        if isinstance(response, ProviderError):
            raise response
        return ProviderOutput(
            fields=dict(response),
            confidence=self.confidence,
            field_confidences=dict(self.field_confidences),
            raw=str(response),
            input_tokens=self.tokens[0] if self.tokens else None,
            output_tokens=self.tokens[1] if self.tokens else None,
        )


def transient(message: str = "rate limited") -> ProviderError:
    return ProviderError(TRANSIENT, message)


def permanent(message: str = "invalid api key") -> ProviderError:
    return ProviderError(PERMANENT, message)


@pytest.fixture
def fake_adapter():
    """Factory for scripted provider adapters."""
    return FakeAdapter


@pytest.fixture
def provider_errors():
    """Factories for transient / permanent ProviderErrors."""
    return {"transient": transient, "permanent": permanent}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    tmp_path = tempfile.mkdtemp(prefix="invoice_pipeline_test_")
    yield Path(tmp_path)
    shutil.rmtree(tmp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> "Config":
    """Provide a test configuration with isolated directories and no network providers."""
    from config import Config

    config = Config()
    # Override paths to use temp directory
    config.output_dir = temp_dir / "output"
    config.output_dir.mkdir(parents=True, exist_ok=True)
    config.db_path = temp_dir / "output" / "pipeline.db"
    config.estimates_csv = temp_dir / "data" / "estimates.csv"
    config.estimates_csv.parent.mkdir(parents=True, exist_ok=True)

    config.provider_order = ["pattern"]
    config.retry_backoff_seconds = 0.0
    config.provider_timeout_seconds = 2.0
    return config


@pytest.fixture
def test_db(test_config) -> "Database":
    """Provide a test database instance."""
    from pipeline.database import Database
    return Database(test_config.db_path)


@pytest.fixture
def sample_fields() -> dict:
    """Normalised provider output for a simple, internally consistent invoice."""
    return {
        "invoice_number": "INV-1001",
        "vendor_name": "Acme Steel Ltd",
        "invoice_date": "2024-03-01",
        "description": "Structural steel supply",
        "subtotal": 3000.00,
        "tax_amount": 300.00,
        "total": 3300.00,
        "line_items": [
            {"description": "Steel beams", "quantity": 25, "unit_price": 120.00, "total": 3000.00},
        ],
    }


@pytest.fixture
def sample_invoice_text() -> str:
    """Page text laid out the way pdfplumber returns a typical invoice."""
    return (
        "Acme Steel Ltd\n"
        "Tax Invoice\n"
        "Invoice #: INV-1001\n"
        "Invoice Date: 2024-03-01\n"
        "Description: Structural steel supply\n"
        "Steel beams   25   120.00   3,000.00\n"
        "Subtotal: $3,000.00\n"
        "GST: $300.00\n"
        "Total: $3,300.00\n"
    )


@pytest.fixture
def stored_invoice(test_db, sample_invoice_text) -> ParsedInvoice:
    """An unreviewed invoice saved to the test database with its page text."""
    invoice = ParsedInvoice(
        invoice_number="INV-1001",
        vendor_name="Acme Steel Ltd",
        invoice_date="2024-03-01",
        subtotal=3000.00,
        tax_amount=300.00,
        total=4800.00,
        line_items=[LineItem(description="Steel beams", quantity=25, unit_price=120.00, total=3000.00)],
        project_id="P-100",
        confidence=0.62,
        field_confidences={"total": 0.4},
        page_numbers=[1],
        provider="openai",
    )
    test_db.save_extraction([invoice], {invoice.id: sample_invoice_text.replace("3,300.00", "5,000.00")})
    return invoice


# Configure pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API tests")
    config.addinivalue_line("markers", "slow: Slow tests")
