import json

import pytest

from conftest import ledger_transport
from verimark.clients.ledger_client import LedgerClient
from verimark.db.models import Product
from verimark.exceptions import CompanyNotFoundError, DuplicateProductError, RequestValidationError
from verimark.models import ProductRegisterRequest
from verimark.services.product_registry import ProductRegistry, generate_product_hash


def registration(**overrides):
    data = {
        "productId": "SKU-100",
        "name": "Olive Oil 1L",
        "serialNumber": "SN-100",
        "batchNumber": "B-9",
        "manufacturingDate": "2026-03-01",
    }
    data.update(overrides)
    return ProductRegisterRequest(**data)


class TestGenerateProductHash:
    def test_deterministic_for_fixed_timestamp(self):
        first = generate_product_hash("SKU-1", 1, "B", "2026-01-01", "salt", timestamp_ms=1700000000000)
        second = generate_product_hash("SKU-1", 1, "B", "2026-01-01", "salt", timestamp_ms=1700000000000)

        assert first == second
        assert len(first) == 64
        int(first, 16)

    def test_salt_changes_hash(self):
        assert generate_product_hash("SKU-1", 1, None, None, "a", 1) != generate_product_hash(
            "SKU-1", 1, None, None, "b", 1
        )

    def test_timestamp_changes_hash(self):
        assert generate_product_hash("SKU-1", 1, None, None, "a", 1) != generate_product_hash(
            "SKU-1", 1, None, None, "a", 2
        )


@pytest.mark.asyncio
class TestRegisterProduct:
    async def test_registers_and_anchors(self, db_session, company, ledger, ledger_requests):
        record = await ProductRegistry(db_session, ledger).register_product(company.id, registration())

        assert record.product_id == "SKU-100"
        assert record.company_id == company.id
        assert record.anchor_status == "anchored"
        assert record.ledger_transaction_id == "0.0.1@1700000000.1"
        assert record.ledger_topic_id == "0.0.42"
        assert len(record.qr_hash) == 64

        stored = db_session.query(Product).filter(Product.id == record.id).one()
        assert stored.anchor_status == "anchored"

        assert len(ledger_requests) == 1
        payload = json.loads(ledger_requests[0].content)
        assert payload["productId"] == "SKU-100"
        assert payload["qrHash"] == record.qr_hash
        assert "salt" not in payload

    async def test_ledger_failure_keeps_product(self, db_session, company):
        ledger = LedgerClient(base_url="http://ledger.test", transport=ledger_transport(status_code=503))

        record = await ProductRegistry(db_session, ledger).register_product(company.id, registration())

        assert record.anchor_status == "failed"
        assert record.ledger_transaction_id is None
        assert db_session.query(Product).count() == 1

    async def test_ledger_disabled(self, db_session, company):
        record = await ProductRegistry(db_session, LedgerClient(base_url="")).register_product(
            company.id, registration()
        )

        assert record.anchor_status == "failed"

    async def test_duplicate_product_id(self, db_session, company, ledger):
        registry = ProductRegistry(db_session, ledger)
        await registry.register_product(company.id, registration())

        with pytest.raises(DuplicateProductError) as exc_info:
            await registry.register_product(company.id, registration(serialNumber="SN-101"))

        assert exc_info.value.status_code == 409
        assert db_session.query(Product).count() == 1

    async def test_same_product_id_for_other_company(self, db_session, company, other_company, ledger):
        registry = ProductRegistry(db_session, ledger)

        first = await registry.register_product(company.id, registration())
        second = await registry.register_product(other_company.id, registration())

        assert first.qr_hash != second.qr_hash

    async def test_unknown_company(self, db_session, ledger):
        with pytest.raises(CompanyNotFoundError):
            await ProductRegistry(db_session, ledger).register_product(999, registration())


class TestVerify:
    def test_verified(self, db_session, company, products):
        result = ProductRegistry(db_session).verify(products[0].qr_hash, "P-1")

        assert result["verified"] is True
        assert result["anchorStatus"] == "pending"
        assert result["product"]["productId"] == "P-1"
        assert result["product"]["companyName"] == "Acme Foods"
        assert result["product"]["verificationUrl"].endswith(f"hash={products[0].qr_hash}&pid=P-1")

    def test_without_product_id(self, db_session, products):
        assert ProductRegistry(db_session).verify(products[1].qr_hash)["verified"] is True

    def test_product_id_mismatch(self, db_session, products):
        result = ProductRegistry(db_session).verify(products[0].qr_hash, "P-2")

        assert result == {
            "success": True,
            "verified": False,
            "message": "This product is not registered.",
        }

    def test_unknown_hash(self, db_session, products):
        assert ProductRegistry(db_session).verify("0" * 64)["verified"] is False

    def test_empty_hash(self, db_session):
        with pytest.raises(RequestValidationError):
            ProductRegistry(db_session).verify("")
