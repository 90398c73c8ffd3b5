"""
QR code rendering for verification links.

Codes are rendered with the highest error-correction level so printed
labels survive scuffs and partial occlusion. Output is deterministic:
the same data and overlay text always give the same PNG bytes.

Besides the bare code there are two print layouts: a labelled code with
the product name above and the serial below, and a sheet that lays out
many labelled codes in a grid.
"""
import io
import logging
from typing import Optional, Sequence, Tuple
import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image, ImageDraw, ImageFont
from flask import current_app

from error_handlers import DependencyError

logger = logging.getLogger(__name__)

QR_SIZE = 560
QR_DARK = "#0c0c0c"
QR_LIGHT = "#ffffff"
QR_BORDER = 1
OVERLAY_BAND_HEIGHT = 72
OVERLAY_MAX_CHARS = 40

# Labelled download layout
LABEL_PADDING = 20
LABEL_TITLE_HEIGHT = 30
LABEL_SERIAL_HEIGHT = 25
LABEL_TEXT_SPACING = 8

# Print sheet layout
SHEET_QR_SIZE = 300
SHEET_COLUMNS = 3
SHEET_SPACING = 40
SHEET_MARGIN = 40
SHEET_HEADER_HEIGHT = 120


class QREncodingError(DependencyError):
    """Raised when data cannot be encoded as a QR code"""
    error = 'QR encoding failed'


def build_verify_url(code: str, base_url: Optional[str] = None) -> str:
    """``https://example.com/verify/SKA000001`` for code ``ska000001``"""
    if base_url is None:
        base_url = current_app.config['APP_BASE_URL']
    return f"{base_url.rstrip('/')}/verify/{code.strip().upper()}"


def _font(size: int):
    return ImageFont.load_default(size=size)


def _fit_text(text: str, max_chars: int = OVERLAY_MAX_CHARS) -> str:
    text = (text or '').strip()
    if len(text) > max_chars:
        text = text[:max_chars - 3] + '...'
    # Fall back to '?' for glyphs outside Latin-1
    return text.encode('latin-1', 'replace').decode('latin-1')


def _draw_centered(draw: ImageDraw.ImageDraw, text: str, top: int, height: int, width: int, font) -> None:
    left, upper, right, lower = draw.textbbox((0, 0), text, font=font)
    x = (width - (right - left)) // 2 - left
    y = top + (height - (lower - upper)) // 2 - upper
    draw.text((x, y), text, fill=QR_DARK, font=font)


def _draw_overlay(img: Image.Image, text: str) -> Image.Image:
    canvas = Image.new('RGB', (img.width, img.height + OVERLAY_BAND_HEIGHT), QR_LIGHT)
    canvas.paste(img, (0, 0))

    draw = ImageDraw.Draw(canvas)
    _draw_centered(draw, _fit_text(text), img.height, OVERLAY_BAND_HEIGHT, canvas.width, ImageFont.load_default())
    return canvas


def _qr_image(data: str, size: int = QR_SIZE) -> Image.Image:
    if not data:
        raise QREncodingError('Cannot encode empty data')

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=10,
        border=QR_BORDER,
    )
    qr.add_data(data)
    try:
        qr.make(fit=True)
    except (DataOverflowError, ValueError) as e:
        logger.warning(f"QR data too large to encode ({len(data)} chars)")
        raise QREncodingError('Data exceeds QR code capacity', original=e)

    img = qr.make_image(fill_color=QR_DARK, back_color=QR_LIGHT).get_image().convert('RGB')
    return img.resize((size, size), Image.Resampling.NEAREST)


def _to_png(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


def render_qr_png(data: str, overlay_text: Optional[str] = None) -> bytes:
    """
    Render ``data`` as a PNG QR code.

    Args:
        data: Text to encode, normally a verification URL
        overlay_text: Optional caption drawn in a band below the code

    Returns:
        PNG bytes

    Raises:
        QREncodingError: data is empty or exceeds QR capacity
    """
    img = _qr_image(data)
    if overlay_text:
        img = _draw_overlay(img, overlay_text)
    return _to_png(img)


def labelled_size(qr_size: int = QR_SIZE) -> Tuple[int, int]:
    """Width and height of a labelled code built around a ``qr_size`` square"""
    width = qr_size + LABEL_PADDING * 2
    height = qr_size + LABEL_TITLE_HEIGHT + LABEL_SERIAL_HEIGHT + LABEL_TEXT_SPACING + LABEL_PADDING * 2
    return width, height


def _labelled_image(data: str, title: str, code: str, qr_size: int = QR_SIZE) -> Image.Image:
    width, height = labelled_size(qr_size)
    canvas = Image.new('RGB', (width, height), QR_LIGHT)
    draw = ImageDraw.Draw(canvas)

    _draw_centered(draw, _fit_text(title), LABEL_PADDING, LABEL_TITLE_HEIGHT, width, _font(22))
    qr_top = LABEL_PADDING + LABEL_TITLE_HEIGHT + LABEL_TEXT_SPACING
    canvas.paste(_qr_image(data, qr_size), (LABEL_PADDING, qr_top))
    _draw_centered(draw, _fit_text(code), qr_top + qr_size, LABEL_SERIAL_HEIGHT, width, _font(18))
    return canvas


def render_labelled_qr_png(data: str, title: str, code: str) -> bytes:
    """Full-size code with ``title`` above and ``code`` below, for printing on tags"""
    return _to_png(_labelled_image(data, title, code))


def render_qr_sheet_png(labels: Sequence[Tuple[str, str, str]], heading: str) -> bytes:
    """
    Lay out labelled codes in a grid on one PNG.

    Args:
        labels: ``(data, title, code)`` tuples, drawn left to right, top to bottom
        heading: Sheet title; the label count is printed beneath it

    Raises:
        QREncodingError: labels is empty or one of the codes cannot be encoded
    """
    if not labels:
        raise QREncodingError('No codes to place on the sheet')

    tile_width, tile_height = labelled_size(SHEET_QR_SIZE)
    columns = min(SHEET_COLUMNS, len(labels))
    rows = (len(labels) + SHEET_COLUMNS - 1) // SHEET_COLUMNS
    width = SHEET_MARGIN * 2 + columns * tile_width + (columns - 1) * SHEET_SPACING
    height = SHEET_HEADER_HEIGHT + SHEET_MARGIN * 2 + rows * tile_height + (rows - 1) * SHEET_SPACING

    sheet = Image.new('RGB', (width, height), QR_LIGHT)
    draw = ImageDraw.Draw(sheet)
    _draw_centered(draw, _fit_text(heading, 80), 20, 50, width, _font(32))
    _draw_centered(draw, f"Codes: {len(labels)}", 70, 30, width, _font(18))

    for index, (data, title, code) in enumerate(labels):
        row, col = divmod(index, SHEET_COLUMNS)
        x = SHEET_MARGIN + col * (tile_width + SHEET_SPACING)
        y = SHEET_HEADER_HEIGHT + SHEET_MARGIN + row * (tile_height + SHEET_SPACING)
        sheet.paste(_labelled_image(data, title, code, SHEET_QR_SIZE), (x, y))

    logger.info(f"Rendered QR sheet with {len(labels)} codes ({width}x{height})")
    return _to_png(sheet)
