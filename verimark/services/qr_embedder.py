"""
QR composition service module for the Verimark application.

This module embeds rendered QR codes onto design images and drives batch
composition for serialized product runs.

The module handles:
- Contain-and-pad QR resizing so modules are never cropped or stretched
- Alpha compositing at a placement
- Serial and batch label overlays
- Chunked concurrent batch composition with per-item failure capture
- Design validation, placement sanitizing and output re-encoding
"""

import asyncio
import inspect
import io
import math
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from verimark import config
from verimark.exceptions import QrEmbeddingError
from verimark.models import (
    CompositeFailure,
    CompositeJob,
    CompositeResult,
    CompositeSuccess,
    OverlayOptions,
    Placement,
    PlacementMethod,
)
from verimark.utils.logging_config import get_logger, log_operation

logger = get_logger(__name__)

WHITE = (255, 255, 255, 255)
DEFAULT_OVERLAY_RGBA = (255, 255, 255, 204)
OVERLAY_FONT = "DejaVuSans.ttf"
VALID_FORMATS = ("jpeg", "jpg", "png", "webp", "tiff", "bmp", "gif")
RGBA_PATTERN = re.compile(r"^rgba?\(([^)]+)\)$")


def clamp(value, low, high):
    return min(max(value, low), high)


def parse_color(color: Optional[str], fallback: Tuple[int, int, int, int]) -> Tuple[int, int, int, int]:
    """
    Parse a CSS-style color into an RGBA tuple.

    Supports ``rgb(...)``, ``rgba(...)`` with a 0..1 alpha, ``#rgb``,
    ``#rgba``, ``#rrggbb``, ``#rrggbbaa`` and named colors. Anything else
    returns ``fallback``.
    """
    if not isinstance(color, str):
        return fallback
    value = color.strip().lower().replace(" ", "")

    match = RGBA_PATTERN.match(value)
    if match:
        try:
            parts = [float(part) for part in match.group(1).split(",")]
        except ValueError:
            return fallback
        r, g, b = (parts + [255, 255, 255])[:3]
        alpha = parts[3] if value.startswith("rgba") and len(parts) > 3 else 1
        return (
            clamp(round(r), 0, 255),
            clamp(round(g), 0, 255),
            clamp(round(b), 0, 255),
            clamp(round(alpha * 255), 0, 255),
        )

    try:
        rgb = ImageColor.getrgb(value)
    except ValueError:
        return fallback
    return rgb if len(rgb) == 4 else (*rgb, 255)


def load_font(size: int):
    try:
        return ImageFont.truetype(OVERLAY_FONT, size)
    except OSError:
        return ImageFont.load_default()


def _safe_int(value: Any, default: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return int(round(number))


def sanitize_placement(placement: Union[Placement, Dict[str, Any]]) -> Placement:
    """
    Coerce a placement into safe integers.

    Values are rounded; x and y are floored at 0, width and height at 1.
    Missing or non-numeric coordinates fall back to 0 (position) and 100 (size).

    Raises:
        ValueError: If ``placement`` is not a mapping or Placement
    """
    if isinstance(placement, Placement):
        placement = placement.to_dict()
    if not isinstance(placement, dict):
        raise ValueError("Invalid placement object")

    sanitized = Placement(
        x=max(0, _safe_int(placement.get("x"), 0)),
        y=max(0, _safe_int(placement.get("y"), 0)),
        width=max(1, _safe_int(placement.get("width"), 100)),
        height=max(1, _safe_int(placement.get("height"), 100)),
    )
    if placement.get("method"):
        sanitized.method = PlacementMethod(placement["method"])
    if placement.get("confidence") is not None:
        sanitized.confidence = float(placement["confidence"])
    return sanitized


def _encode(image: Image.Image, image_format: str) -> bytes:
    if image_format not in ("PNG", "JPEG", "WEBP"):
        image_format = "PNG"
    output = io.BytesIO()
    if image_format == "JPEG" and image.mode != "RGB":
        image = image.convert("RGB")
    image.save(output, format=image_format)
    return output.getvalue()


class QrEmbedder:
    """
    Composites QR codes onto a base design.

    Attributes:
        chunk_size (int): Items composed concurrently per batch chunk
        item_timeout (float): Seconds allowed for one item before it is failed
    """

    MIN_DESIGN_SIZE = 300
    MAX_DESIGN_SIZE = 10000
    PRINT_QUALITY_SIZE = 1200

    def __init__(self, chunk_size: Optional[int] = None, item_timeout: Optional[float] = None):
        self.chunk_size = chunk_size or config.BATCH_CHUNK_SIZE
        self.item_timeout = item_timeout or config.ITEM_TIMEOUT_SECONDS

    def embed_qr_on_design(
        self,
        design_bytes: bytes,
        qr_bytes: bytes,
        placement: Union[Placement, Dict[str, Any]],
        product_id: Optional[str] = None,
    ) -> bytes:
        """
        Composite a QR image onto a design at ``placement``.

        The QR is fitted inside the placement box preserving its aspect ratio
        and padded with white, then alpha-blended onto the design. The output
        keeps the design's encoding format (PNG when unknown).

        Args:
            design_bytes: Encoded base design
            qr_bytes: Encoded QR image
            placement: Target box in design pixel coordinates
            product_id: Identifier attached to any raised error

        Returns:
            bytes: Encoded composite image

        Raises:
            QrEmbeddingError: If an image cannot be decoded or the placement
            does not fit inside the design
        """
        try:
            box = sanitize_placement(placement)
            with Image.open(io.BytesIO(design_bytes)) as design:
                image_format = design.format or "PNG"
                base = design.convert("RGBA")

            if not box.fits_within(base.width, base.height):
                raise QrEmbeddingError(
                    f"QR placement ({box.x}, {box.y}, {box.width}x{box.height}) "
                    f"exceeds image bounds {base.width}x{base.height}",
                    product_id,
                )

            with Image.open(io.BytesIO(qr_bytes)) as qr_source:
                qr_image = qr_source.convert("RGBA")

            fitted = ImageOps.pad(
                qr_image,
                (box.width, box.height),
                method=Image.Resampling.LANCZOS,
                color=WHITE,
                centering=(0.5, 0.5),
            )
            base.alpha_composite(fitted, dest=(box.x, box.y))

            return _encode(base, image_format)

        except QrEmbeddingError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise QrEmbeddingError(f"Failed to embed QR code: {e}", product_id) from e

    def add_metadata_overlay(
        self,
        image_bytes: bytes,
        serial_number: Optional[str] = None,
        batch_number: Optional[str] = None,
        product_id: Optional[str] = None,
        options: Optional[OverlayOptions] = None,
    ) -> bytes:
        """
        Draw a label box with the serial and batch numbers at the bottom of the image.

        A failed overlay never fails the item: the un-overlaid image is returned.
        """
        options = options or OverlayOptions()
        try:
            with Image.open(io.BytesIO(image_bytes)) as source:
                image_format = source.format or "PNG"
                image = source.convert("RGBA")
            width, height = image.size

            padding = options.padding
            font_size = options.font_size
            secondary_size = max(10, font_size - 2)
            overlay_height = max(50, font_size + secondary_size + padding * 3)
            overlay_width = max(10, width - padding * 2)
            overlay_y = max(0, height - overlay_height - padding)

            layer = Image.new("RGBA", image.size, (0, 0, 0, 0))
            draw = ImageDraw.Draw(layer)
            draw.rectangle(
                (padding, overlay_y, padding + overlay_width, overlay_y + overlay_height),
                fill=parse_color(options.background_color, DEFAULT_OVERLAY_RGBA),
            )

            text_color = parse_color(options.text_color, (0, 0, 0, 255))
            text_x = padding * 2
            primary = serial_number or product_id or ""
            draw.text(
                (text_x, overlay_y + padding), primary, font=load_font(font_size), fill=text_color
            )
            if batch_number:
                draw.text(
                    (text_x, overlay_y + padding + font_size + padding // 2),
                    f"Batch: {batch_number}",
                    font=load_font(secondary_size),
                    fill=text_color,
                )

            return _encode(Image.alpha_composite(image, layer), image_format)

        except Exception as e:
            logger.error(f"Failed to add metadata overlay for {product_id or serial_number}: {e}")
            return image_bytes

    def compose(
        self,
        design_bytes: bytes,
        job: CompositeJob,
        placement: Union[Placement, Dict[str, Any]],
        include_metadata: bool = False,
        overlay: Optional[OverlayOptions] = None,
    ) -> bytes:
        """Embed one job's QR and optionally stamp its label."""
        composite = self.embed_qr_on_design(design_bytes, job.qr_image, placement, job.product_id)
        if include_metadata:
            composite = self.add_metadata_overlay(
                composite,
                serial_number=job.serial_number,
                batch_number=job.batch_number,
                product_id=job.product_id,
                options=overlay,
            )
        return composite

    async def _compose_one(
        self,
        design_bytes: bytes,
        job: CompositeJob,
        placement: Placement,
        include_metadata: bool,
        overlay: Optional[OverlayOptions],
    ) -> CompositeResult:
        try:
            buffer = await asyncio.wait_for(
                asyncio.to_thread(
                    self.compose, design_bytes, job, placement, include_metadata, overlay
                ),
                timeout=self.item_timeout,
            )
        except QrEmbeddingError as e:
            logger.warning(f"Failed to embed QR for {job.product_id}: {e}")
            return CompositeFailure(
                product_id=job.product_id,
                serial_number=job.serial_number,
                error=str(e),
                qr_hash=job.qr_hash,
                batch_number=job.batch_number,
            )
        except asyncio.TimeoutError:
            logger.warning(f"QR composition for {job.product_id} timed out after {self.item_timeout}s")
            return CompositeFailure(
                product_id=job.product_id,
                serial_number=job.serial_number,
                error=f"Composition timed out after {self.item_timeout}s",
                qr_hash=job.qr_hash,
                batch_number=job.batch_number,
            )
        except Exception as e:
            logger.error(f"Unexpected error composing {job.product_id}: {e}", exc_info=True)
            return CompositeFailure(
                product_id=job.product_id,
                serial_number=job.serial_number,
                error=f"Failed to embed QR code: {e}",
                qr_hash=job.qr_hash,
                batch_number=job.batch_number,
            )

        return CompositeSuccess(
            product_id=job.product_id,
            serial_number=job.serial_number,
            buffer=buffer,
            qr_hash=job.qr_hash,
            batch_number=job.batch_number,
        )

    async def generate_batch_designs(
        self,
        design_bytes: bytes,
        jobs: Sequence[CompositeJob],
        placement: Union[Placement, Dict[str, Any]],
        include_metadata: bool = False,
        overlay: Optional[OverlayOptions] = None,
        chunk_size: Optional[int] = None,
        on_progress=None,
    ) -> List[CompositeResult]:
        """
        Compose every job onto the design in bounded concurrent chunks.

        Items within a chunk run concurrently; the next chunk starts only after
        every item of the current one has settled. Per-item failures become
        ``CompositeFailure`` entries and never cancel siblings.

        Args:
            design_bytes: Encoded base design
            jobs: Products to compose
            placement: Target box shared by every item
            include_metadata: Stamp serial and batch labels
            overlay: Label styling
            chunk_size: Items per chunk, defaults to the embedder's
            on_progress: Optional ``(done, total)`` callback, sync or async,
                called once per chunk

        Returns:
            List[CompositeResult]: One result per job, in input order
        """
        chunk_size = chunk_size or self.chunk_size
        box = sanitize_placement(placement)
        total = len(jobs)
        results: List[CompositeResult] = []

        logger.info(f"Batch composition starting: {total} item(s), placement {box.box()}")
        loop = asyncio.get_running_loop()
        started = loop.time()

        for start in range(0, total, chunk_size):
            chunk = jobs[start:start + chunk_size]
            chunk_results = await asyncio.gather(
                *(self._compose_one(design_bytes, job, box, include_metadata, overlay) for job in chunk)
            )
            results.extend(chunk_results)

            if on_progress is not None:
                outcome = on_progress(min(start + chunk_size, total), total)
                if inspect.isawaitable(outcome):
                    await outcome

        failed = sum(1 for result in results if not result.success)
        log_operation(
            logger,
            "generate_batch_designs",
            "partial" if failed else "success",
            {"total": total, "successful": total - failed, "failed": failed},
            duration=loop.time() - started,
        )
        return results

    def validate_design(self, data: bytes) -> Dict[str, Any]:
        """
        Check that an uploaded design is usable for printing.

        Returns:
            Dict with ``valid``, ``errors``, ``warnings`` and (when decodable)
            ``metadata`` holding width, height, format, mode and has_alpha
        """
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                width, height = image.size
                image_format = (image.format or "unknown").lower()
                mode = image.mode
                has_alpha = False
                if "A" in image.getbands() or "transparency" in image.info:
                    alpha = image.convert("RGBA").getchannel("A")
                    has_alpha = alpha.getextrema()[0] < 255
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            return {"valid": False, "errors": [f"Invalid image file: {e}"], "warnings": []}

        errors = []
        warnings = []
        if image_format not in VALID_FORMATS:
            errors.append(f"Unsupported format: {image_format}")
        if width < self.MIN_DESIGN_SIZE or height < self.MIN_DESIGN_SIZE:
            errors.append(
                f"Image too small. Minimum {self.MIN_DESIGN_SIZE}x{self.MIN_DESIGN_SIZE}px"
            )
        if width > self.MAX_DESIGN_SIZE or height > self.MAX_DESIGN_SIZE:
            errors.append(
                f"Image too large. Maximum {self.MAX_DESIGN_SIZE}x{self.MAX_DESIGN_SIZE}px"
            )
        if width < self.PRINT_QUALITY_SIZE or height < self.PRINT_QUALITY_SIZE:
            warnings.append("Image resolution may be too low for high-quality printing")

        return {
            "valid": not errors,
            "errors": errors,
            "warnings": warnings,
            "metadata": {
                "width": width,
                "height": height,
                "format": image_format,
                "mode": mode,
                "has_alpha": has_alpha,
            },
        }

    def optimize_image(
        self,
        data: bytes,
        fmt: str = "png",
        quality: Optional[int] = None,
        compression_level: Optional[int] = None,
    ) -> bytes:
        """Re-encode an image as png, jpeg or webp."""
        target = (fmt or "png").lower()
        with Image.open(io.BytesIO(data)) as source:
            image = source.copy()

        output = io.BytesIO()
        if target in ("jpeg", "jpg"):
            image.convert("RGB").save(output, format="JPEG", quality=clamp(quality or 90, 1, 100))
        elif target == "webp":
            image.save(output, format="WEBP", quality=clamp(quality or 90, 1, 100))
        else:
            params = {}
            if compression_level is not None:
                params["compress_level"] = clamp(compression_level, 0, 9)
            image.save(output, format="PNG", **params)
        return output.getvalue()
