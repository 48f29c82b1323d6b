"""
Download orchestration for QR-only and embedded exports.

Loads tenant-scoped product records, renders a fresh QR per product,
composes them onto the active template when requested, packages the batch
and stores the archive for retrieval.
"""

import asyncio
import time
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from verimark import config
from verimark.clients.storage_client import StorageClient
from verimark.db.models import Product
from verimark.exceptions import ProductsNotFoundError, RequestValidationError
from verimark.models import (
    CompositeFailure,
    CompositeJob,
    CompositeResult,
    CompositeSuccess,
    DownloadOptions,
    DownloadResult,
)
from verimark.services.design_exporter import DesignExporter, get_export_stats
from verimark.services.qr_embedder import QrEmbedder
from verimark.services.qr_generator import generate_qr_buffer
from verimark.services.template_service import TemplateService
from verimark.utils.logging_config import get_logger, log_operation

logger = get_logger(__name__)

QR_ONLY_FILENAME_FORMAT = "{serialNumber}_QR.png"


def _batch_id() -> str:
    return f"download_{int(time.time() * 1000)}"


def _validate_product_ids(product_ids: Sequence[int]) -> List[int]:
    if not product_ids or isinstance(product_ids, (str, bytes)):
        raise RequestValidationError("Product IDs are required")
    try:
        return [int(pid) for pid in product_ids]
    except (TypeError, ValueError) as e:
        raise RequestValidationError("Product IDs must be integers") from e


class ProductDownloader:
    """
    Top-level entry point for product downloads.

    Attributes:
        session: Record store session
        storage: Blob storage for templates and archives
        embedder: QR compositor and batch driver
        exporter: Archive and PDF packager
    """

    def __init__(
        self,
        session: Session,
        storage: StorageClient,
        embedder: Optional[QrEmbedder] = None,
        exporter: Optional[DesignExporter] = None,
    ):
        self.session = session
        self.storage = storage
        self.embedder = embedder or QrEmbedder()
        self.exporter = exporter or DesignExporter()
        self.templates = TemplateService(session)

    def load_products(self, product_ids: Sequence[int], company_id: int) -> List[Product]:
        """
        Load products by primary key, restricted to ``company_id``.

        Ids owned by other companies are silently dropped.

        Raises:
            ProductsNotFoundError: If none of the ids belong to the company
        """
        products = (
            self.session.query(Product)
            .filter(Product.id.in_(list(product_ids)), Product.company_id == company_id)
            .order_by(Product.id)
            .all()
        )
        if not products:
            raise ProductsNotFoundError()
        if len(products) < len(set(product_ids)):
            logger.warning(
                f"Company {company_id} requested {len(set(product_ids))} product(s), "
                f"{len(products)} found"
            )
        return products

    async def _render_qr(self, product: Product) -> CompositeResult:
        try:
            buffer = await asyncio.to_thread(
                generate_qr_buffer, product.qr_hash, product.product_id, config.QR_RENDER_WIDTH
            )
        except ValueError as e:
            logger.error(f"Failed to generate QR for {product.product_id}: {e}")
            return CompositeFailure(
                product_id=product.product_id,
                serial_number=product.serial_number,
                error=str(e),
                qr_hash=product.qr_hash,
                batch_number=product.batch_number,
            )
        return CompositeSuccess(
            product_id=product.product_id,
            serial_number=product.serial_number,
            buffer=buffer,
            qr_hash=product.qr_hash,
            batch_number=product.batch_number,
        )

    async def render_qr_codes(
        self, products: Sequence[Product], chunk_size: Optional[int] = None
    ) -> List[CompositeResult]:
        """Render one QR per product in bounded chunks."""
        chunk_size = chunk_size or config.BATCH_CHUNK_SIZE
        results: List[CompositeResult] = []
        for start in range(0, len(products), chunk_size):
            chunk = products[start:start + chunk_size]
            results.extend(await asyncio.gather(*(self._render_qr(p) for p in chunk)))
        return results

    async def download_qr_only(self, product_ids: Sequence[int], company_id: int) -> DownloadResult:
        """
        Package standalone QR codes as a ZIP with manifest.

        Raises:
            RequestValidationError: If ``product_ids`` is empty or malformed
            ProductsNotFoundError: If no requested product belongs to the company
            StorageError: If the archive cannot be stored
        """
        started = time.time()
        ids = _validate_product_ids(product_ids)
        products = self.load_products(ids, company_id)

        designs = await self.render_qr_codes(products)
        archive = await asyncio.to_thread(
            self.exporter.export_as_zip,
            designs,
            include_manifest=True,
            filename_format=QR_ONLY_FILENAME_FORMAT,
        )
        upload = await asyncio.to_thread(
            self.exporter.upload_to_storage, archive, company_id, _batch_id(), "zip", self.storage
        )

        stats = get_export_stats(designs)
        log_operation(
            logger,
            "download_qr_only",
            "success",
            {"company_id": company_id, "count": len(products), "failed": stats.failed},
            duration=time.time() - started,
        )
        return DownloadResult(
            download_url=upload["url"],
            count=len(products),
            stats=stats,
            format="qr-only",
            output_type="zip",
        )

    async def download_embedded(
        self,
        product_ids: Sequence[int],
        company_id: int,
        output_type: str = "zip",
        options: Optional[DownloadOptions] = None,
    ) -> DownloadResult:
        """
        Compose every product's QR onto the company's active template and package it.

        ``output_type`` is ``zip`` or ``pdf``; for PDFs ``options.pdf_layout``
        selects ``fit``, ``native`` or ``nup``. Per-item failures are reported
        in the stats and never abort the request.

        Raises:
            RequestValidationError: If the request is malformed
            NoActiveTemplateError: If the company has no active template
            ProductsNotFoundError: If no requested product belongs to the company
            StorageError: If the template cannot be fetched or the archive stored
            ExportError: If the PDF cannot be produced
        """
        started = time.time()
        options = options or DownloadOptions()
        ids = _validate_product_ids(product_ids)
        if output_type not in ("zip", "pdf"):
            raise RequestValidationError('Invalid outputType. Must be "zip" or "pdf"')
        if output_type == "pdf" and options.pdf_layout not in ("fit", "native", "nup"):
            raise RequestValidationError('Invalid pdfLayout. Must be "fit", "native" or "nup"')

        template = self.templates.get_active_template(company_id)
        products = self.load_products(ids, company_id)
        template_bytes = await asyncio.to_thread(self.storage.fetch, template.template_url)

        qr_results = await self.render_qr_codes(products, options.chunk_size)
        jobs = []
        designs: List[CompositeResult] = []
        for result in qr_results:
            if result.success:
                jobs.append(
                    CompositeJob(
                        product_id=result.product_id,
                        serial_number=result.serial_number,
                        qr_image=result.buffer,
                        qr_hash=result.qr_hash,
                        batch_number=result.batch_number,
                    )
                )
            else:
                designs.append(result)

        designs = await self.embedder.generate_batch_designs(
            template_bytes,
            jobs,
            template.qr_placement,
            include_metadata=options.include_metadata,
            overlay=options.overlay,
            chunk_size=options.chunk_size,
            on_progress=options.on_progress,
        ) + designs

        if output_type == "pdf" and options.pdf_layout == "nup":
            data = await asyncio.to_thread(
                self.exporter.export_as_nup_pdf,
                designs,
                columns=options.columns,
                rows=options.rows,
                spacing=options.spacing,
            )
        elif output_type == "pdf":
            data = await asyncio.to_thread(
                self.exporter.export_as_pdf,
                designs,
                layout=options.pdf_layout,
                include_metadata=options.include_metadata,
            )
        else:
            data = await asyncio.to_thread(
                self.exporter.export_as_zip,
                designs,
                include_manifest=True,
                filename_format=options.filename_format,
            )

        upload = await asyncio.to_thread(
            self.exporter.upload_to_storage, data, company_id, _batch_id(), output_type, self.storage
        )

        stats = get_export_stats(designs)
        log_operation(
            logger,
            "download_embedded",
            "success",
            {
                "company_id": company_id,
                "template_id": template.id,
                "output_type": output_type,
                "count": len(products),
                "failed": stats.failed,
            },
            duration=time.time() - started,
        )
        return DownloadResult(
            download_url=upload["url"],
            count=len(products),
            stats=stats,
            format="embedded",
            output_type=output_type,
            template_name=template.name,
        )
