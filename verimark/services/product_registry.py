"""
Product registration and public verification.

Registration always completes in the record store first; ledger anchoring
runs afterwards and its outcome is recorded on the row without ever failing
the registration.
"""

import hashlib
import json
import time
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from verimark.clients.ledger_client import LedgerClient
from verimark.db.mappers import db_to_product_record
from verimark.db.models import Company, Product
from verimark.exceptions import (
    CompanyNotFoundError,
    DuplicateProductError,
    LedgerError,
    RequestValidationError,
)
from verimark.models import ProductRecord, ProductRegisterRequest
from verimark.services.qr_generator import build_verification_url
from verimark.utils.logging_config import get_logger, log_operation

logger = get_logger(__name__)


def generate_product_hash(
    product_id: str,
    company_id: int,
    batch_number: Optional[str],
    manufacturing_date: Optional[str],
    salt: str,
    timestamp_ms: Optional[int] = None,
) -> str:
    """
    SHA-256 over a canonical JSON of the product's identity.

    The company salt keeps hashes unguessable; the millisecond timestamp makes
    re-registrations produce a fresh hash.
    """
    data = json.dumps(
        {
            "productId": product_id,
            "companyId": company_id,
            "batchNumber": batch_number,
            "manufacturingDate": manufacturing_date,
            "salt": salt,
            "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


class ProductRegistry:
    def __init__(self, session: Session, ledger: Optional[LedgerClient] = None):
        self.session = session
        self._ledger = ledger

    @property
    def ledger(self) -> LedgerClient:
        if self._ledger is None:
            self._ledger = LedgerClient()
        return self._ledger

    async def register_product(self, company_id: int, data: ProductRegisterRequest) -> ProductRecord:
        """
        Register a product, then anchor it.

        Args:
            company_id: Owning company
            data: Product fields

        Returns:
            ProductRecord: The stored product with its final anchor status

        Raises:
            CompanyNotFoundError: If the company does not exist
            DuplicateProductError: If the company already registered ``productId``
        """
        company = self.session.query(Company).filter(Company.id == company_id).first()
        if company is None:
            raise CompanyNotFoundError()
        if not data.productId:
            raise RequestValidationError("productId is required")

        qr_hash = generate_product_hash(
            data.productId, company.id, data.batchNumber, data.manufacturingDate, company.secret_salt
        )
        product = Product(
            company_id=company.id,
            product_id=data.productId,
            name=data.name,
            serial_number=data.serialNumber,
            batch_number=data.batchNumber,
            manufacturing_date=data.manufacturingDate,
            qr_hash=qr_hash,
            anchor_status="pending",
        )
        try:
            self.session.add(product)
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            logger.warning(f"Duplicate product {data.productId} for company {company_id}: {e}")
            raise DuplicateProductError(f"Product {data.productId} is already registered") from e
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error registering product {data.productId}: {str(e)}")
            raise
        logger.info(f"Registered product {product.product_id} (id={product.id}) for company {company_id}")

        await self._anchor(product)
        return db_to_product_record(product)

    async def _anchor(self, product: Product) -> None:
        payload = {
            "productId": product.product_id,
            "companyId": product.company_id,
            "name": product.name,
            "batchNumber": product.batch_number,
            "serialNumber": product.serial_number,
            "manufacturingDate": product.manufacturing_date,
            "qrHash": product.qr_hash,
        }
        try:
            receipt = await self.ledger.submit(payload)
        except LedgerError as e:
            log_operation(
                logger,
                "anchor_product",
                "failure",
                {"product_id": product.product_id},
                error=e,
            )
            product.anchor_status = "failed"
        else:
            product.anchor_status = "anchored"
            product.ledger_transaction_id = receipt.transaction_id
            product.ledger_topic_id = receipt.topic_id
            log_operation(
                logger,
                "anchor_product",
                "success",
                {"product_id": product.product_id, "transaction_id": receipt.transaction_id},
            )

        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Error saving anchor status for {product.product_id}: {str(e)}")

    def verify(self, qr_hash: str, product_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Look up a scanned code.

        Unknown hashes, or a hash paired with the wrong product id, report
        ``verified: False`` rather than raising.
        """
        if not qr_hash:
            raise RequestValidationError("hash is required")

        product = self.session.query(Product).filter(Product.qr_hash == qr_hash).first()
        if product is None or (product_id and product.product_id != product_id):
            logger.info(f"Verification failed for hash {qr_hash[:8]}")
            return {
                "success": True,
                "verified": False,
                "message": "This product is not registered.",
            }

        return {
            "success": True,
            "verified": True,
            "anchorStatus": product.anchor_status,
            "product": {
                "productId": product.product_id,
                "name": product.name,
                "serialNumber": product.serial_number,
                "batchNumber": product.batch_number,
                "manufacturingDate": product.manufacturing_date,
                "companyName": product.company.name if product.company else None,
                "ledgerTransactionId": product.ledger_transaction_id,
                "ledgerTopicId": product.ledger_topic_id,
                "verificationUrl": build_verification_url(product.qr_hash, product.product_id),
            },
            "message": "Product verified as authentic.",
        }
