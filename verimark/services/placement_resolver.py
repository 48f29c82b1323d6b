"""
Placement resolution across all QR placement sources.

Detection sources (color region, text marker) run against the image; saved
template coordinates and CSV literal coordinates are direct lookups that
never touch the image. Every source is normalized into ``Placement``.
"""

import asyncio
import io
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError
from sqlalchemy.orm import Session

from verimark import config
from verimark.db.models import DesignTemplate
from verimark.models import (
    DetectionResult,
    ImageDimensions,
    Placement,
    PlacementMethod,
    ResolutionResult,
)
from verimark.services.color_region_detector import ColorRegionDetector
from verimark.services.text_marker_detector import TextMarkerDetector
from verimark.utils.logging_config import get_logger

logger = get_logger(__name__)


def read_dimensions(image_bytes: bytes) -> ImageDimensions:
    with Image.open(io.BytesIO(image_bytes)) as image:
        width, height = image.size
    return ImageDimensions(width=width, height=height)


def create_default_placement(
    dimensions: ImageDimensions, qr_size: Optional[int] = None
) -> Optional[Placement]:
    """
    Centered square of ``qr_size`` pixels, shrunk to fit small images.

    Returns None when the image cannot hold a square of the minimum QR size.
    """
    size = qr_size or config.DEFAULT_QR_SIZE
    size = min(size, dimensions.width, dimensions.height)
    if size < config.MIN_QR_SIZE:
        logger.info(
            f"{dimensions.width}x{dimensions.height} image is too small for a default placement"
        )
        return None
    return Placement(
        x=(dimensions.width - size) // 2,
        y=(dimensions.height - size) // 2,
        width=size,
        height=size,
        method=PlacementMethod.DEFAULT,
        confidence=0.0,
    )


def get_template_coordinates(
    session: Session, template_id: int, company_id: Optional[int] = None
) -> DetectionResult:
    """
    Look up the saved placement of a template.

    When ``company_id`` is given the lookup is restricted to that company.
    """
    query = session.query(DesignTemplate).filter(DesignTemplate.id == template_id)
    if company_id is not None:
        query = query.filter(DesignTemplate.company_id == company_id)
    template = query.first()
    if template is None or not template.qr_placement:
        return DetectionResult(found=False, details={"error": "Template not found"})

    try:
        placement = Placement.from_dict(
            template.qr_placement, method=PlacementMethod.TEMPLATE, confidence=100.0
        )
    except ValueError as e:
        logger.warning(f"Template {template_id} has an invalid placement: {e}")
        return DetectionResult(found=False, details={"error": str(e)})

    return DetectionResult(
        found=True,
        placement=placement,
        confidence=100.0,
        details={"templateName": template.name},
    )


def get_csv_coordinates(row: Dict[str, Any]) -> DetectionResult:
    """
    Read a placement from a parsed CSV row.

    Accepts either a nested ``qrPlacement`` mapping or flat ``qr_x``,
    ``qr_y``, ``qr_width`` and ``qr_height`` columns.
    """
    data = row.get("qrPlacement")
    if data is None and all(f"qr_{key}" in row for key in ("x", "y", "width", "height")):
        data = {key: row[f"qr_{key}"] for key in ("x", "y", "width", "height")}
    if not data:
        return DetectionResult(found=False)

    try:
        placement = Placement.from_dict(data, method=PlacementMethod.CSV, confidence=100.0)
    except ValueError as e:
        return DetectionResult(found=False, details={"error": str(e)})
    return DetectionResult(found=True, placement=placement, confidence=100.0)


class PlacementResolver:
    """
    Runs the image-based detectors and collects every placement they find.

    Both detectors may contribute; choosing between them is left to the caller.
    """

    def __init__(
        self,
        color_detector: Optional[ColorRegionDetector] = None,
        text_detector: Optional[TextMarkerDetector] = None,
        color_timeout: Optional[float] = None,
    ):
        self.color_detector = color_detector or ColorRegionDetector()
        self.text_detector = text_detector or TextMarkerDetector()
        self.color_timeout = color_timeout or config.COLOR_DETECTION_TIMEOUT_SECONDS

    async def resolve_all(
        self,
        image_bytes: bytes,
        placeholder_color: Optional[str] = None,
        text_marker: Optional[str] = None,
    ) -> ResolutionResult:
        """
        Detect QR placements in an image.

        Args:
            image_bytes: Encoded design image
            placeholder_color: Hex color of a placeholder block, if any
            text_marker: Marker word to search with OCR, if any

        Returns:
            ResolutionResult: ``success`` is True when at least one placement
            was found; an undecodable image yields ``success=False`` with an error
        """
        try:
            dimensions = await asyncio.to_thread(read_dimensions, image_bytes)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.error(f"Placement detection could not read image: {e}")
            return ResolutionResult(success=False, error=str(e))

        result = ResolutionResult(success=False, image_dimensions=dimensions)

        if placeholder_color:
            try:
                detection = await asyncio.wait_for(
                    asyncio.to_thread(self.color_detector.detect, image_bytes, placeholder_color),
                    timeout=self.color_timeout,
                )
            except asyncio.TimeoutError:
                # The worker thread cannot be interrupted; its result is discarded
                logger.warning(
                    f"Color detection on {dimensions.width}x{dimensions.height} image "
                    f"timed out after {self.color_timeout}s"
                )
            else:
                if detection.found:
                    result.placements.append(detection.placement)
                    result.methods.append(PlacementMethod.COLOR.value)

        if text_marker:
            detection = await self.text_detector.detect(image_bytes, text_marker)
            if detection.found:
                result.placements.append(detection.placement)
                result.methods.append(PlacementMethod.TEXT.value)

        result.success = bool(result.placements)
        logger.info(
            f"Resolved {len(result.placements)} placement(s) via {result.methods or 'none'} "
            f"on {dimensions.width}x{dimensions.height} image"
        )
        return result
