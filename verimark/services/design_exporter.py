"""
Export packaging for composed designs.

Turns a batch of composite results into a ZIP archive (with optional
manifest), a one-design-per-page PDF or an N-up grid PDF, and stores the
result in blob storage.
"""

import asyncio
import io
import json
import re
import time
import zipfile
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from PIL import Image
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from verimark import config
from verimark.clients.storage_client import StorageClient
from verimark.exceptions import ExportError
from verimark.models import CompositeResult, CompositeSuccess, ExportStats
from verimark.utils.logging_config import get_logger, log_timing

logger = get_logger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9._-]", re.IGNORECASE)
DEFAULT_FILENAME_FORMAT = "{serialNumber}.png"
PDF_TITLE = "Product Designs with QR Codes"
PDF_AUTHOR = "Verimark"

CONTENT_TYPES = {"zip": "application/zip", "pdf": "application/pdf"}

Cell = Tuple[float, float, float, float]


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


def generate_filename(design: CompositeResult, filename_format: Optional[str] = None) -> str:
    """
    Build an archive filename from a format template.

    Tokens: ``{productId}``, ``{serialNumber}`` (falls back to the product
    id), ``{qrHash}`` (first 8 characters) and ``{timestamp}`` (ms). The
    result always ends in ``.png`` and only contains ``[a-z0-9._-]``.
    """
    filename = filename_format or DEFAULT_FILENAME_FORMAT
    replacements = {
        "{productId}": design.product_id or "unknown",
        "{serialNumber}": design.serial_number or design.product_id or "unknown",
        "{qrHash}": (design.qr_hash or "")[:8],
        "{timestamp}": str(_timestamp_ms()),
    }
    for token, value in replacements.items():
        filename = filename.replace(token, value)

    if not filename.lower().endswith(".png"):
        filename += ".png"
    return UNSAFE_FILENAME_CHARS.sub("_", filename)


def generate_manifest(
    designs: Sequence[CompositeResult],
    filename_format: Optional[str] = None,
    filenames: Optional[Dict[int, str]] = None,
) -> Dict[str, Any]:
    """
    Summarize a batch for ``manifest.json``.

    ``filenames`` maps a design's index in ``designs`` to the name it was
    written under; designs without an entry get a freshly generated name.
    """
    filenames = filenames or {}
    return {
        "generated": datetime.now(timezone.utc).isoformat(),
        "totalDesigns": len(designs),
        "successfulDesigns": sum(1 for d in designs if d.success),
        "failedDesigns": sum(1 for d in designs if not d.success),
        "designs": [
            {
                "productId": design.product_id,
                "serialNumber": design.serial_number,
                "qrHash": design.qr_hash,
                "success": design.success,
                "error": getattr(design, "error", None),
                "filename": filenames.get(index) or generate_filename(design, filename_format),
            }
            for index, design in enumerate(designs)
        ],
    }


def get_export_stats(designs: Sequence[CompositeResult]) -> ExportStats:
    """Summarize a batch independently of the export format."""
    total = len(designs)
    failed = [d for d in designs if not d.success]
    successful = total - len(failed)
    success_rate = f"{successful / total * 100:.2f}" if total else "0.00"
    return ExportStats(
        total=total,
        successful=successful,
        failed=len(failed),
        success_rate=success_rate,
        failed_items=[{"productId": d.product_id, "error": d.error} for d in failed],
    )


def compute_nup_layout(
    count: int,
    columns: int,
    rows: int,
    spacing: float,
    page_width: float = config.A4_WIDTH_PT,
    page_height: float = config.A4_HEIGHT_PT,
) -> List[List[Cell]]:
    """
    Place ``count`` cells on pages of ``columns`` x ``rows``.

    Cell size per axis is ``(page - spacing * (cells + 1)) / cells``. Cells
    are returned as ``(x, y, width, height)`` in PDF points with the origin
    at the bottom-left, filled left to right then top to bottom.

    Raises:
        ValueError: If the grid or spacing leaves no room for a cell
    """
    if columns < 1 or rows < 1:
        raise ValueError("columns and rows must be at least 1")
    cell_width = (page_width - spacing * (columns + 1)) / columns
    cell_height = (page_height - spacing * (rows + 1)) / rows
    if cell_width <= 0 or cell_height <= 0:
        raise ValueError("Spacing leaves no room for designs on the page")

    per_page = columns * rows
    pages = []
    for start in range(0, count, per_page):
        cells = []
        for slot in range(min(per_page, count - start)):
            col = slot % columns
            row = slot // columns
            x = spacing + col * (cell_width + spacing)
            y = page_height - (row + 1) * (cell_height + spacing)
            cells.append((x, y, cell_width, cell_height))
        pages.append(cells)
    return pages


def fit_within(width: float, height: float, max_width: float, max_height: float) -> Tuple[float, float]:
    scale = min(max_width / width, max_height / height)
    return width * scale, height * scale


def _successful(designs: Sequence[CompositeResult]) -> List[CompositeSuccess]:
    kept = []
    for design in designs:
        if not design.success or not design.buffer:
            logger.warning(f"Skipping failed design: {design.product_id}")
            continue
        kept.append(design)
    return kept


def _open_image(design: CompositeSuccess) -> Image.Image:
    with Image.open(io.BytesIO(design.buffer)) as source:
        return source.convert("RGB")


def _new_canvas(output: io.BytesIO, title: Optional[str], author: Optional[str]) -> canvas.Canvas:
    pdf = canvas.Canvas(output, pageCompression=1)
    pdf.setTitle(title or PDF_TITLE)
    pdf.setAuthor(author or PDF_AUTHOR)
    return pdf


class DesignExporter:
    """Packages composed designs as ZIP or PDF and uploads the result."""

    @log_timing(logger, "export_as_zip")
    def export_as_zip(
        self,
        designs: Sequence[CompositeResult],
        include_manifest: bool = False,
        filename_format: Optional[str] = None,
    ) -> bytes:
        """
        Write every successful design into a deflate archive at level 9.

        Failed designs are skipped with a warning. Duplicate filenames get a
        numeric suffix so no entry is shadowed.
        """
        output = io.BytesIO()
        written: Dict[int, str] = {}
        with zipfile.ZipFile(output, "w", zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for index, design in enumerate(designs):
                if not design.success or not design.buffer:
                    logger.warning(f"Skipping failed design: {design.product_id}")
                    continue
                filename = generate_filename(design, filename_format)
                if filename in written.values():
                    stem = filename[:-4]
                    suffix = 2
                    while f"{stem}-{suffix}.png" in written.values():
                        suffix += 1
                    filename = f"{stem}-{suffix}.png"
                written[index] = filename
                archive.writestr(filename, design.buffer)

            if include_manifest:
                manifest = generate_manifest(designs, filename_format, filenames=written)
                archive.writestr("manifest.json", json.dumps(manifest, indent=2))

        return output.getvalue()

    @log_timing(logger, "export_as_pdf")
    def export_as_pdf(
        self,
        designs: Sequence[CompositeResult],
        layout: str = "fit",
        include_metadata: bool = False,
        title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> bytes:
        """
        One design per page.

        ``fit`` scales the page to fit A4 preserving aspect ratio; ``native``
        uses the image's pixel size as the page size in points.

        Raises:
            ExportError: If there is no successful design or rendering fails
        """
        if layout not in ("fit", "native"):
            raise ExportError(f"Invalid PDF layout: {layout}")
        kept = _successful(designs)
        if not kept:
            raise ExportError("No successful designs to export")

        output = io.BytesIO()
        try:
            pdf = _new_canvas(output, title, author)
            for design in kept:
                image = _open_image(design)
                if layout == "fit":
                    page_width, page_height = fit_within(
                        image.width, image.height, config.A4_WIDTH_PT, config.A4_HEIGHT_PT
                    )
                else:
                    page_width, page_height = image.width, image.height

                pdf.setPageSize((page_width, page_height))
                pdf.drawImage(ImageReader(image), 0, 0, width=page_width, height=page_height)
                if include_metadata:
                    pdf.setFont("Helvetica", 8)
                    pdf.setFillColorRGB(0, 0, 0)
                    pdf.drawString(10, 10, f"Product: {design.serial_number or design.product_id}")
                pdf.showPage()
            pdf.save()
        except (OSError, ValueError) as e:
            logger.error(f"PDF export error: {e}")
            raise ExportError(f"Failed to create PDF: {e}") from e

        return output.getvalue()

    @log_timing(logger, "export_as_nup_pdf")
    def export_as_nup_pdf(
        self,
        designs: Sequence[CompositeResult],
        columns: int = 2,
        rows: int = 2,
        spacing: float = 10,
        title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> bytes:
        """
        Pack ``columns * rows`` designs per A4 page.

        Each design is scaled to fit its cell preserving aspect ratio and
        centered in the leftover space. Only successful designs take a cell.

        Raises:
            ExportError: If there is no successful design, the grid is invalid,
            or rendering fails
        """
        kept = _successful(designs)
        if not kept:
            raise ExportError("No successful designs to export")
        try:
            pages = compute_nup_layout(len(kept), columns, rows, spacing)
        except ValueError as e:
            raise ExportError(str(e)) from e

        output = io.BytesIO()
        try:
            pdf = _new_canvas(output, title, author)
            remaining = iter(kept)
            for cells in pages:
                pdf.setPageSize((config.A4_WIDTH_PT, config.A4_HEIGHT_PT))
                for x, y, cell_width, cell_height in cells:
                    image = _open_image(next(remaining))
                    width, height = fit_within(image.width, image.height, cell_width, cell_height)
                    pdf.drawImage(
                        ImageReader(image),
                        x + (cell_width - width) / 2,
                        y + (cell_height - height) / 2,
                        width=width,
                        height=height,
                    )
                pdf.showPage()
            pdf.save()
        except (OSError, ValueError) as e:
            logger.error(f"N-up PDF export error: {e}")
            raise ExportError(f"Failed to create N-up PDF: {e}") from e

        return output.getvalue()

    async def export_both(
        self,
        designs: Sequence[CompositeResult],
        zip_options: Optional[Dict[str, Any]] = None,
        pdf_options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, bytes]:
        """Build the ZIP and PDF for the same batch concurrently."""
        zip_bytes, pdf_bytes = await asyncio.gather(
            asyncio.to_thread(self.export_as_zip, designs, **(zip_options or {})),
            asyncio.to_thread(self.export_as_pdf, designs, **(pdf_options or {})),
        )
        return {"zip": zip_bytes, "pdf": pdf_bytes}

    def upload_to_storage(
        self,
        data: bytes,
        company_id: int,
        batch_id: str,
        fmt: str,
        storage: StorageClient,
    ) -> Dict[str, str]:
        """
        Store an export under ``designs/{company_id}/{batch_id}/designs-{ms}.{fmt}``.

        Raises:
            StorageError: If the write fails
        """
        if fmt not in CONTENT_TYPES:
            raise ExportError(f"Unsupported export format: {fmt}")
        path = f"designs/{company_id}/{batch_id}/designs-{_timestamp_ms()}.{fmt}"
        url = storage.put(path, data, CONTENT_TYPES[fmt])
        return {"path": path, "url": url}
