"""
Data models for the Verimark application.

This module defines the core data structures shared by the placement
detectors, the QR compositor, the export packager and the download
orchestrator, plus the Pydantic schemas used by the HTTP layer.

The module provides:
- Placement and detection result models
- Composite job inputs and tagged success/failure results
- Export statistics and download results
- Request schemas for the API
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from verimark import config


class PlacementMethod(str, Enum):
    """How a placement was obtained."""

    COLOR = "color"
    TEXT = "text"
    TEMPLATE = "template"
    CSV = "csv"
    DEFAULT = "default"


@dataclass
class ImageDimensions:
    width: int
    height: int

    def to_dict(self) -> Dict[str, int]:
        return {"width": self.width, "height": self.height}


@dataclass
class Placement:
    """
    Integer pixel rectangle in the coordinate space of one base image.

    Attributes:
        x, y: Top-left corner
        width, height: Size of the QR area
        method: Source that produced the placement
        confidence: Score in [0, 100]; literal and template sources use 100
    """

    x: int
    y: int
    width: int
    height: int
    method: PlacementMethod = PlacementMethod.TEMPLATE
    confidence: float = 100.0

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        method: Optional[Union[PlacementMethod, str]] = None,
        confidence: Optional[float] = None,
    ) -> "Placement":
        """
        Build a placement from a stored or client-supplied mapping.

        Canvas editors send fractional coordinates, so values are rounded to
        the nearest pixel.

        Raises:
            ValueError: If a coordinate is missing or not a finite number
        """
        if not isinstance(data, dict):
            raise ValueError("Invalid placement object")
        values = {}
        for key in ("x", "y", "width", "height"):
            try:
                number = float(data[key])
            except (KeyError, TypeError, ValueError):
                raise ValueError(f"Placement is missing a numeric '{key}'")
            if not math.isfinite(number):
                raise ValueError(f"Placement '{key}' must be a finite number")
            values[key] = int(round(number))
        resolved_method = method or data.get("method") or PlacementMethod.TEMPLATE
        if confidence is None:
            confidence = data.get("confidence", 100.0)
        return cls(
            method=PlacementMethod(resolved_method),
            confidence=float(confidence),
            **values,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "method": self.method.value,
            "confidence": self.confidence,
        }

    def box(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    def fits_within(self, width: int, height: int) -> bool:
        return (
            self.x >= 0
            and self.y >= 0
            and self.x + self.width <= width
            and self.y + self.height <= height
        )

    def is_printable(self, min_size: int = config.MIN_QR_SIZE) -> bool:
        return self.width >= min_size and self.height >= min_size


@dataclass
class DetectionResult:
    """Outcome of one detector. ``found=False`` is a normal result, not an error."""

    found: bool
    placement: Optional[Placement] = None
    confidence: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "found": self.found,
            "placement": self.placement.to_dict() if self.placement else None,
            "confidence": self.confidence,
            "details": self.details,
        }


@dataclass
class ColoredRegion:
    """Bounding box and pixel counts accumulated while flood filling."""

    min_x: int
    max_x: int
    min_y: int
    max_y: int
    area: int = 0
    matched_pixels: int = 0

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1


@dataclass
class ResolutionResult:
    success: bool
    placements: List[Placement] = field(default_factory=list)
    methods: List[str] = field(default_factory=list)
    image_dimensions: Optional[ImageDimensions] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "placements": [p.to_dict() for p in self.placements],
            "methods": list(self.methods),
            "imageDimensions": (
                self.image_dimensions.to_dict() if self.image_dimensions else None
            ),
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class WordBox:
    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def width(self) -> int:
        return self.x1 - self.x0

    @property
    def height(self) -> int:
        return self.y1 - self.y0


@dataclass
class OcrWord:
    text: str
    bbox: WordBox
    confidence: float


@dataclass
class CompositeJob:
    """One product awaiting QR embedding. Lives only for one export request."""

    product_id: str
    serial_number: Optional[str]
    qr_image: bytes
    qr_hash: Optional[str] = None
    batch_number: Optional[str] = None


@dataclass
class CompositeSuccess:
    product_id: str
    serial_number: Optional[str]
    buffer: bytes
    qr_hash: Optional[str] = None
    batch_number: Optional[str] = None
    success: bool = field(default=True, init=False)


@dataclass
class CompositeFailure:
    product_id: str
    serial_number: Optional[str]
    error: str
    qr_hash: Optional[str] = None
    batch_number: Optional[str] = None
    success: bool = field(default=False, init=False)


CompositeResult = Union[CompositeSuccess, CompositeFailure]


@dataclass
class OverlayOptions:
    """Styling for the serial/batch label drawn at the bottom of a design."""

    font_size: int = 16
    padding: int = 10
    text_color: str = "#000000"
    background_color: str = "rgba(255,255,255,0.8)"


@dataclass
class ExportStats:
    total: int
    successful: int
    failed: int
    success_rate: str
    failed_items: List[Dict[str, Optional[str]]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "successRate": self.success_rate,
            "failedItems": self.failed_items,
        }


@dataclass
class DownloadOptions:
    """
    Options for an embedded export.

    ``pdf_layout`` is ``fit`` (page scaled into A4), ``native`` (page matches
    the image) or ``nup`` (``columns`` x ``rows`` designs per A4 page).
    """

    include_metadata: bool = False
    pdf_layout: str = "fit"
    columns: int = 2
    rows: int = 2
    spacing: float = 10
    filename_format: str = "{serialNumber}.png"
    chunk_size: int = config.BATCH_CHUNK_SIZE
    on_progress: Optional[Callable[[int, int], Any]] = None
    overlay: OverlayOptions = field(default_factory=OverlayOptions)


@dataclass
class DownloadResult:
    download_url: str
    count: int
    stats: ExportStats
    format: str
    output_type: str
    template_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "downloadUrl": self.download_url,
            "count": self.count,
            "stats": self.stats.to_dict(),
            "format": self.format,
            "outputType": self.output_type,
        }
        if self.template_name is not None:
            data["templateName"] = self.template_name
        return data


@dataclass
class TemplateRecord:
    id: int
    company_id: int
    name: str
    template_url: Optional[str]
    qr_placement: Placement
    placeholder_color: Optional[str] = None
    placeholder_text: Optional[str] = None
    is_active: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["qr_placement"] = self.qr_placement.box()
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass
class ProductRecord:
    id: int
    company_id: int
    product_id: str
    name: Optional[str]
    serial_number: Optional[str]
    batch_number: Optional[str]
    qr_hash: str
    anchor_status: str = "pending"
    ledger_transaction_id: Optional[str] = None
    ledger_topic_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LedgerReceipt:
    transaction_id: str
    topic_id: Optional[str] = None


# Pydantic schemas for API requests
class PlacementSchema(BaseModel):
    x: float = Field(ge=0)
    y: float = Field(ge=0)
    width: float = Field(ge=config.MIN_QR_SIZE)
    height: float = Field(ge=config.MIN_QR_SIZE)

    def to_placement(self, method: PlacementMethod = PlacementMethod.TEMPLATE) -> Placement:
        return Placement.from_dict(self.model_dump(), method=method, confidence=100.0)


class DownloadRequest(BaseModel):
    productIds: List[int] = Field(min_length=1)
    format: str
    outputType: str = "zip"
    includeMetadata: bool = False
    pdfLayout: str = "fit"
    columns: int = Field(default=2, ge=1, le=10)
    rows: int = Field(default=2, ge=1, le=10)

    @field_validator("format")
    @classmethod
    def validate_format(cls, value: str) -> str:
        if value not in ("qr-only", "embedded"):
            raise ValueError('Invalid format. Must be "qr-only" or "embedded"')
        return value

    @field_validator("outputType")
    @classmethod
    def validate_output_type(cls, value: str) -> str:
        if value not in ("zip", "pdf"):
            raise ValueError('Invalid outputType. Must be "zip" or "pdf"')
        return value

    @field_validator("pdfLayout")
    @classmethod
    def validate_pdf_layout(cls, value: str) -> str:
        if value not in ("fit", "native", "nup"):
            raise ValueError('Invalid pdfLayout. Must be "fit", "native" or "nup"')
        return value


class TemplateCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    templateUrl: Optional[str] = None
    qrPlacement: PlacementSchema
    placeholderColor: Optional[str] = None
    placeholderText: Optional[str] = None


class TemplateUpdateRequest(BaseModel):
    id: int
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    qrPlacement: Optional[PlacementSchema] = None
    placeholderColor: Optional[str] = None
    placeholderText: Optional[str] = None


class TemplateActivateRequest(BaseModel):
    id: int


class ProductRegisterRequest(BaseModel):
    productId: str = Field(min_length=1, max_length=100)
    name: Optional[str] = None
    serialNumber: Optional[str] = None
    batchNumber: Optional[str] = None
    manufacturingDate: Optional[str] = None

    model_config = ConfigDict(str_strip_whitespace=True)
