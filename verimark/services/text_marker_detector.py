"""
Text marker detection.

Designers can type a marker such as ``QR_HERE`` where the code should go.
OCR finds the word and a square placement is derived around it.
"""

import asyncio
import io
import re
from typing import List, Optional, Protocol

import pytesseract
from PIL import Image, UnidentifiedImageError

from verimark import config
from verimark.models import DetectionResult, OcrWord, Placement, PlacementMethod, WordBox
from verimark.utils.logging_config import get_logger

logger = get_logger(__name__)

NON_WORD_PATTERN = re.compile(r"[^\w]")


class OcrEngine(Protocol):
    def recognize(self, png_bytes: bytes, lang: str) -> List[OcrWord]:
        ...


class TesseractOcrEngine:
    """OCR engine backed by the local tesseract binary."""

    def recognize(self, png_bytes: bytes, lang: str = "eng") -> List[OcrWord]:
        with Image.open(io.BytesIO(png_bytes)) as image:
            data = pytesseract.image_to_data(
                image, lang=lang, output_type=pytesseract.Output.DICT
            )

        words = []
        for i, text in enumerate(data["text"]):
            if not text or not text.strip():
                continue
            left, top = int(data["left"][i]), int(data["top"][i])
            words.append(
                OcrWord(
                    text=text,
                    bbox=WordBox(
                        x0=left,
                        y0=top,
                        x1=left + int(data["width"][i]),
                        y1=top + int(data["height"][i]),
                    ),
                    confidence=max(float(data["conf"][i]), 0.0),
                )
            )
        return words


def normalize_marker(text: str) -> str:
    return NON_WORD_PATTERN.sub("", text.upper())


def square_around_word(
    bbox: WordBox, image_width: int, image_height: int, padding: int
) -> Placement:
    """
    Derive a square QR area anchored at the padded word box.

    The side is ``max(word width, word height) + 2 * padding``. Near the
    right or bottom edge the square is shifted inward, and if the image is
    smaller than the side the square shrinks to the shorter image dimension,
    so the result always lies inside the image.
    """
    side = max(bbox.width, bbox.height) + padding * 2
    side = min(side, image_width, image_height)
    x = min(max(0, bbox.x0 - padding), image_width - side)
    y = min(max(0, bbox.y0 - padding), image_height - side)
    return Placement(x=x, y=y, width=side, height=side, method=PlacementMethod.TEXT)


class TextMarkerDetector:
    """
    Finds a marker word with OCR and turns it into a placement.

    Attributes:
        engine: OCR engine returning recognized words
        lang (str): OCR language code
        timeout (float): Seconds allowed for one OCR call
        padding (int): Margin added around the word box
    """

    def __init__(
        self,
        engine: Optional[OcrEngine] = None,
        lang: Optional[str] = None,
        timeout: Optional[float] = None,
        padding: Optional[int] = None,
        min_size: Optional[int] = None,
    ):
        self.engine = engine or TesseractOcrEngine()
        self.lang = lang or config.OCR_LANG
        self.timeout = timeout or config.OCR_TIMEOUT_SECONDS
        self.padding = config.TEXT_MARKER_PADDING if padding is None else padding
        self.min_size = min_size or config.MIN_QR_SIZE

    async def recognize(self, image_bytes: bytes) -> List[OcrWord]:
        """
        Run OCR on the image off the event loop, bounded by ``self.timeout``.

        Raises:
            asyncio.TimeoutError: If OCR does not finish in time
        """
        return await asyncio.wait_for(
            asyncio.to_thread(self.engine.recognize, image_bytes, self.lang),
            timeout=self.timeout,
        )

    async def detect(self, image_bytes: bytes, marker_text: str) -> DetectionResult:
        """
        Search OCR output for ``marker_text``.

        Both sides are uppercased and stripped of non-word characters; a word
        matches when it equals or contains the marker. The first match in OCR
        order wins.

        Args:
            image_bytes: Encoded image
            marker_text: Marker to look for

        Returns:
            DetectionResult: ``found=False`` on no match, OCR failure or timeout
        """
        marker = normalize_marker(marker_text or "")
        if not marker:
            return DetectionResult(found=False, details={"error": "Empty text marker"})

        try:
            png_bytes, width, height = await asyncio.to_thread(to_png, image_bytes)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.warning(f"Text detection could not decode image: {e}")
            return DetectionResult(found=False, details={"error": str(e)})

        try:
            words = await self.recognize(png_bytes)
        except asyncio.TimeoutError:
            logger.warning(f"OCR timed out after {self.timeout}s")
            return DetectionResult(found=False, details={"error": "OCR timed out"})
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as e:
            logger.error(f"OCR failed: {e}")
            return DetectionResult(found=False, details={"error": str(e)})

        for word in words:
            text = normalize_marker(word.text)
            if not text or marker not in text:
                continue

            placement = square_around_word(word.bbox, width, height, self.padding)
            placement.confidence = word.confidence
            details = {"recognizedText": word.text, "ocrConfidence": word.confidence}
            if not placement.is_printable(self.min_size):
                details["error"] = "Image is too small for a QR code at the marker"
                return DetectionResult(found=False, confidence=word.confidence, details=details)

            logger.info(
                f"Found marker {marker_text!r} as {word.text!r} at "
                f"({placement.x}, {placement.y}) size {placement.width}"
            )
            return DetectionResult(
                found=True,
                placement=placement,
                confidence=word.confidence,
                details=details,
            )

        return DetectionResult(found=False, details={"wordCount": len(words)})


def to_png(image_bytes: bytes):
    """Decode any supported image and re-encode it as PNG for OCR."""
    with Image.open(io.BytesIO(image_bytes)) as image:
        width, height = image.size
        output = io.BytesIO()
        image.convert("RGB").save(output, format="PNG")
    return output.getvalue(), width, height
