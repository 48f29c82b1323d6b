"""
Placeholder color region detection.

Designers mark the QR area with a solid block of a known color. This module
finds the largest contiguous block of that color and reports its bounding
box as a placement.

The module handles:
- Hex color parsing
- Per-channel tolerance matching over the whole raster
- Stack-based 4-connected flood fill with a visited bitmap
- Confidence scoring from the share of exactly matching pixels
"""

import io
import re
from typing import List, Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from verimark import config
from verimark.models import ColoredRegion, DetectionResult, Placement, PlacementMethod
from verimark.utils.logging_config import get_logger

logger = get_logger(__name__)

HEX_COLOR_PATTERN = re.compile(r"^#?([a-f\d]{2})([a-f\d]{2})([a-f\d]{2})$", re.IGNORECASE)

# Regions at or below this many pixels are treated as noise
MIN_REGION_AREA = 100


def hex_to_rgb(hex_color: str) -> Optional[Tuple[int, int, int]]:
    """Parse ``#RRGGBB`` (leading ``#`` optional). Returns None when malformed."""
    if not hex_color:
        return None
    match = HEX_COLOR_PATTERN.match(hex_color.strip())
    if not match:
        return None
    return tuple(int(part, 16) for part in match.groups())


def build_match_masks(
    pixels: np.ndarray, target: Tuple[int, int, int], tolerance: int
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compare every pixel against the target color.

    Args:
        pixels: ``(height, width, channels)`` uint8 array, RGB first
        target: Target RGB triple
        tolerance: Maximum absolute difference allowed on each channel

    Returns:
        Tuple of flat boolean arrays: pixels within tolerance, and pixels
        equal to the target on every channel
    """
    rgb = pixels[:, :, :3].astype(np.int16)
    diff = np.abs(rgb - np.array(target, dtype=np.int16))
    within = np.all(diff <= tolerance, axis=2).ravel()
    exact = np.all(diff == 0, axis=2).ravel()
    return within, exact


def flood_fill(
    within: np.ndarray,
    exact: np.ndarray,
    visited: bytearray,
    width: int,
    height: int,
    start: int,
) -> ColoredRegion:
    """
    Grow a 4-connected region from ``start`` using an explicit stack.

    Pixels are marked visited when pushed, so each one enters the stack at
    most once and the traversal terminates on any input.
    """
    start_x, start_y = start % width, start // width
    region = ColoredRegion(min_x=start_x, max_x=start_x, min_y=start_y, max_y=start_y)

    stack = [start]
    visited[start] = 1
    while stack:
        index = stack.pop()
        x, y = index % width, index // width

        region.area += 1
        if exact[index]:
            region.matched_pixels += 1
        if x < region.min_x:
            region.min_x = x
        elif x > region.max_x:
            region.max_x = x
        if y < region.min_y:
            region.min_y = y
        elif y > region.max_y:
            region.max_y = y

        if x + 1 < width:
            neighbour = index + 1
            if not visited[neighbour] and within[neighbour]:
                visited[neighbour] = 1
                stack.append(neighbour)
        if x > 0:
            neighbour = index - 1
            if not visited[neighbour] and within[neighbour]:
                visited[neighbour] = 1
                stack.append(neighbour)
        if y + 1 < height:
            neighbour = index + width
            if not visited[neighbour] and within[neighbour]:
                visited[neighbour] = 1
                stack.append(neighbour)
        if y > 0:
            neighbour = index - width
            if not visited[neighbour] and within[neighbour]:
                visited[neighbour] = 1
                stack.append(neighbour)

    return region


def find_colored_regions(
    pixels: np.ndarray, target: Tuple[int, int, int], tolerance: int
) -> List[ColoredRegion]:
    """
    Find every contiguous region matching ``target`` in row-major discovery order.

    Regions with an area of ``MIN_REGION_AREA`` pixels or fewer are dropped.
    """
    height, width = pixels.shape[:2]
    within, exact = build_match_masks(pixels, target, tolerance)
    visited = bytearray(width * height)

    regions = []
    # flatnonzero yields seeds in row-major order
    for seed in np.flatnonzero(within).tolist():
        if visited[seed]:
            continue
        region = flood_fill(within, exact, visited, width, height, seed)
        if region.area > MIN_REGION_AREA:
            regions.append(region)
    return regions


class ColorRegionDetector:
    """
    Detects a solid placeholder block of a given color.

    Attributes:
        tolerance (int): Per-channel tolerance used when none is passed to ``detect``
        min_size (int): Smallest printable side length for the resulting placement
    """

    def __init__(self, tolerance: Optional[int] = None, min_size: Optional[int] = None):
        self.tolerance = config.COLOR_TOLERANCE if tolerance is None else tolerance
        self.min_size = min_size or config.MIN_QR_SIZE

    def detect(
        self, image_bytes: bytes, target_color: str, tolerance: Optional[int] = None
    ) -> DetectionResult:
        """
        Locate the largest region of ``target_color`` in an encoded image.

        Args:
            image_bytes: Encoded image in any format Pillow can read
            target_color: Hex color such as ``#00FF00``
            tolerance: Per-channel tolerance, defaults to the detector's

        Returns:
            DetectionResult: ``found=False`` when the color is malformed, the
            image cannot be decoded, or no region is large enough
        """
        tolerance = self.tolerance if tolerance is None else tolerance
        target = hex_to_rgb(target_color)
        if target is None:
            return DetectionResult(found=False, details={"error": "Invalid color format"})

        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.warning(f"Color detection could not decode image: {e}")
            return DetectionResult(found=False, details={"error": str(e)})

        regions = find_colored_regions(pixels, target, tolerance)
        if not regions:
            return DetectionResult(found=False, details={"regionCount": 0})

        # max() keeps the first region on ties, i.e. the first discovered
        largest = max(regions, key=lambda region: region.area)
        confidence = min(largest.matched_pixels / largest.area * 100, 100.0)
        placement = Placement(
            x=largest.min_x,
            y=largest.min_y,
            width=largest.width,
            height=largest.height,
            method=PlacementMethod.COLOR,
            confidence=confidence,
        )
        details = {
            "regionCount": len(regions),
            "area": largest.area,
            "matchedPixels": largest.matched_pixels,
        }

        if not placement.is_printable(self.min_size):
            logger.info(
                f"Color region {placement.width}x{placement.height} is smaller than "
                f"the minimum QR size {self.min_size}"
            )
            details["error"] = "Detected region is too small for a QR code"
            return DetectionResult(found=False, confidence=confidence, details=details)

        logger.info(
            f"Detected {target_color} region at ({placement.x}, {placement.y}) "
            f"{placement.width}x{placement.height}, confidence {confidence:.1f}"
        )
        return DetectionResult(
            found=True, placement=placement, confidence=confidence, details=details
        )
