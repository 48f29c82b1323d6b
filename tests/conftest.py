"""
Centralized test configuration and fixtures.

Provides an isolated in-memory database per test, a temporary blob store,
a mocked ledger transport, seeded companies/products/templates and helpers
for generating fixture images with PIL.
"""

import io
import os
import struct
import tempfile
import time
import zlib
from typing import Generator, Tuple

# Set test environment variables early
os.environ["TESTING"] = "true"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="verimark-storage-")
os.environ["LEDGER_API_URL"] = ""

import httpx
import pytest
from PIL import Image, ImageDraw
from sqlalchemy.orm import Session, sessionmaker

from verimark.clients.ledger_client import LedgerClient
from verimark.clients.storage_client import StorageClient
from verimark.db.database import create_database_engine
from verimark.db.models import Base, Company, DesignTemplate, Product
from verimark.models import OcrWord, WordBox

PUBLIC_URL = "http://testserver/files"
GREEN = (0, 255, 0)


def make_image(
    size: Tuple[int, int] = (1000, 1000),
    color=(255, 255, 255),
    rect=None,
    rect_color=GREEN,
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    """Encode a solid image, optionally with one filled rectangle ``(x, y, w, h)``."""
    image = Image.new(mode, size, color)
    if rect:
        x, y, w, h = rect
        ImageDraw.Draw(image).rectangle((x, y, x + w - 1, y + h - 1), fill=rect_color)
    output = io.BytesIO()
    image.save(output, format=fmt)
    return output.getvalue()


def oversized_png(width: int = 15000, height: int = 15000) -> bytes:
    """A tiny PNG whose header declares a size Pillow refuses to decode."""

    def chunk(kind: bytes, data: bytes) -> bytes:
        body = kind + data
        return struct.pack(">I", len(data)) + body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)

    header = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", header) + chunk(b"IEND", b"")


@pytest.fixture
def image_factory():
    return make_image


class FakeOcrEngine:
    """OCR stand-in returning canned words, optionally after a delay or with an error."""

    def __init__(self, words=None, delay=0.0, error=None):
        self.words = words or []
        self.delay = delay
        self.error = error
        self.calls = []

    def recognize(self, png_bytes, lang):
        self.calls.append(lang)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.words)


def ocr_word(text, x0, y0, x1, y1, confidence=90.0):
    return OcrWord(text=text, bbox=WordBox(x0=x0, y0=y0, x1=x1, y1=y1), confidence=confidence)


@pytest.fixture
def test_engine():
    """Fresh in-memory database per test."""
    engine = create_database_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    session = sessionmaker(bind=test_engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def company(db_session):
    company = Company(name="Acme Foods", email="ops@acme.test", secret_salt="acme-salt")
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture
def other_company(db_session):
    company = Company(name="Rival Goods", email="ops@rival.test", secret_salt="rival-salt")
    db_session.add(company)
    db_session.commit()
    return company


@pytest.fixture
def products(db_session, company):
    """Three products owned by ``company``."""
    items = [
        Product(
            company_id=company.id,
            product_id=f"P-{i}",
            name=f"Product {i}",
            serial_number=f"SN-00{i}",
            batch_number="B-1",
            qr_hash=f"{i:064x}",
        )
        for i in range(1, 4)
    ]
    db_session.add_all(items)
    db_session.commit()
    return items


@pytest.fixture
def foreign_product(db_session, other_company):
    product = Product(
        company_id=other_company.id,
        product_id="X-1",
        serial_number="SN-X",
        qr_hash="f" * 64,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def storage(tmp_path) -> StorageClient:
    return StorageClient(base_dir=str(tmp_path / "storage"), public_base_url=PUBLIC_URL)


@pytest.fixture
def design_bytes() -> bytes:
    """Plain 1000x1000 banner with a green placeholder at (400, 400)."""
    return make_image(rect=(400, 400, 200, 200))


@pytest.fixture
def active_template(db_session, company, storage, design_bytes):
    url = storage.put(f"templates/{company.id}/banner.png", design_bytes, "image/png")
    template = DesignTemplate(
        company_id=company.id,
        name="Spring banner",
        template_url=url,
        qr_placement={"x": 400, "y": 400, "width": 200, "height": 200},
        placeholder_color="#00FF00",
        is_active=True,
    )
    db_session.add(template)
    db_session.commit()
    return template


def ledger_transport(status_code=200, payload=None, requests=None):
    """MockTransport answering every ledger submission the same way."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        body = payload if payload is not None else {"transactionId": "0.0.1@1700000000.1", "topicId": "0.0.42"}
        return httpx.Response(status_code, json=body)

    return httpx.MockTransport(handler)


@pytest.fixture
def ledger_requests():
    return []


@pytest.fixture
def ledger(ledger_requests) -> LedgerClient:
    return LedgerClient(
        base_url="http://ledger.test",
        api_key="test-key",
        topic_id="0.0.42",
        timeout=2,
        transport=ledger_transport(requests=ledger_requests),
    )


@pytest.fixture
def client(db_session, storage, ledger):
    """FastAPI test client with database, storage and ledger overrides."""
    from fastapi.testclient import TestClient

    from verimark.api import app, get_db, get_ledger_client, get_storage_client

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_client] = lambda: storage
    app.dependency_overrides[get_ledger_client] = lambda: ledger

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()
