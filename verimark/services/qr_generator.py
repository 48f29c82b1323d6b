"""
QR rendering for product verification links.

Every product's QR payload is a function of its immutable hash, so renders
are never cached: regenerating one is idempotent.
"""

import asyncio
import io
from typing import Optional
from urllib.parse import urlencode

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q

from verimark import config

ERROR_CORRECTION_LEVELS = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}


def build_verification_url(qr_hash: str, product_id: str, base_url: Optional[str] = None) -> str:
    base = (base_url or config.APP_URL).rstrip("/")
    return f"{base}/verify?{urlencode({'hash': qr_hash, 'pid': product_id})}"


def render_qr_png(
    payload: str,
    width: int = 600,
    error_correction: str = "H",
    margin: int = 2,
    dark_color: str = "#000000",
    light_color: str = "#FFFFFF",
) -> bytes:
    """
    Render a payload to a square PNG of exactly ``width`` pixels.

    Args:
        payload: Data to encode
        width: Output side length in pixels
        error_correction: One of L, M, Q, H
        margin: Quiet zone in modules
        dark_color: Module color
        light_color: Background color

    Returns:
        bytes: PNG image data

    Raises:
        ValueError: If the payload is empty or an option is invalid
    """
    if not payload:
        raise ValueError("QR payload must not be empty")
    level = ERROR_CORRECTION_LEVELS.get(str(error_correction).upper())
    if level is None:
        raise ValueError(f"Invalid error correction level: {error_correction}")
    if width <= 0:
        raise ValueError("QR width must be positive")

    qr = qrcode.QRCode(
        version=None,
        error_correction=level,
        box_size=10,
        border=margin,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    qr_img = qr.make_image(fill_color=dark_color, back_color=light_color).convert("RGB")

    # Nearest neighbour keeps module edges hard at any scale
    qr_img = qr_img.resize((width, width), Image.Resampling.NEAREST)

    output = io.BytesIO()
    qr_img.save(output, format="PNG")
    return output.getvalue()


def generate_qr_buffer(
    qr_hash: str,
    product_id: str,
    width: Optional[int] = None,
    error_correction: str = "H",
    margin: int = 2,
) -> bytes:
    """Render the verification QR code for one product."""
    return render_qr_png(
        build_verification_url(qr_hash, product_id),
        width=width or config.QR_RENDER_WIDTH,
        error_correction=error_correction,
        margin=margin,
    )


async def generate_qr_buffer_async(
    qr_hash: str, product_id: str, width: Optional[int] = None
) -> bytes:
    return await asyncio.to_thread(generate_qr_buffer, qr_hash, product_id, width)
