"""
Tray indicator rendering.

Draws the remaining-time label ('45m', '2h') on a rounded accent chip with
Pillow. The chip is drawn at 128x128 and downsampled to the 64x64 size the
tray expects, which keeps the glyph edges smooth.
"""

import logging
import threading
from typing import Optional

from PIL import Image, ImageDraw, ImageFont

logger = logging.getLogger(__name__)

NATIVE_SIZE = 128
ICON_SIZE = 64
CORNER_RADIUS = 24  # at native size
ACCENT_RGB = (79, 70, 229)
TEXT_RGB = (255, 255, 255)

# Tried in order; the first one Pillow can open is used
FONT_CANDIDATES = [
    'arialbd.ttf',
    'arial.ttf',
    'Arial Bold.ttf',
    'DejaVuSans-Bold.ttf',
    'DejaVuSans.ttf',
]


class RenderError(Exception):
    """The drawing surface produced no usable image."""


class ChipSurface:
    """Pillow drawing surface: text centered on a rounded square."""

    def __init__(self, background=ACCENT_RGB, foreground=TEXT_RGB):
        self.background = background
        self.foreground = foreground
        self._fonts = {}

    def _font(self, size: int):
        if size not in self._fonts:
            font = None
            for name in FONT_CANDIDATES:
                try:
                    font = ImageFont.truetype(name, size)
                    break
                except (OSError, IOError):
                    continue
            self._fonts[size] = font or ImageFont.load_default()
        return self._fonts[size]

    def capture(self, text: str, size: int) -> 'Image.Image':
        """Draw text on a size x size chip, shrinking the font to fit."""
        img = Image.new('RGBA', (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(img)
        radius = CORNER_RADIUS * size // NATIVE_SIZE
        draw.rounded_rectangle(
            [0, 0, size - 1, size - 1], radius=radius, fill=self.background
        )
        if not text:
            return img

        margin = size // 10
        font_size = int(size * 0.6)
        while True:
            font = self._font(font_size)
            left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
            tw, th = right - left, bottom - top
            if tw <= size - 2 * margin or font_size <= 8:
                break
            font_size -= 4

        draw.text(
            ((size - tw) // 2 - left, (size - th) // 2 - top),
            text, fill=self.foreground, font=font
        )
        return img


class IndicatorRenderer:
    """
    Turns short display text into a tray bitmap.

    Only one render runs at a time. A request that arrives while another
    render is in progress returns None and is not queued. The surface is
    created on first use and kept for the life of the process.
    """

    def __init__(self, surface=None, native_size: int = NATIVE_SIZE,
                 icon_size: int = ICON_SIZE):
        self._surface = surface
        self.native_size = native_size
        self.icon_size = icon_size
        self._busy = threading.Lock()

    def _ensure_surface(self):
        if self._surface is None:
            self._surface = ChipSurface()
            logger.info("Indicator surface initialized")
        return self._surface

    def render_label(self, text: str) -> Optional['Image.Image']:
        """
        Render text as a tray icon.

        Returns:
            icon_size x icon_size RGBA image, a blank placeholder chip if
            drawing failed, or None if another render is in flight
        """
        if not self._busy.acquire(blocking=False):
            logger.debug(f"Render of '{text}' skipped, renderer busy")
            return None
        try:
            image = self._ensure_surface().capture(text, self.native_size)
            if image is None or image.size[0] == 0 or image.size[1] == 0:
                raise RenderError(f"empty bitmap for '{text}'")
            return image.resize((self.icon_size, self.icon_size),
                                Image.LANCZOS)
        except Exception as e:
            logger.warning(f"Indicator render failed: {e}")
            return self.placeholder()
        finally:
            self._busy.release()

    def placeholder(self) -> 'Image.Image':
        """Plain accent chip with no text."""
        img = Image.new('RGBA', (self.icon_size, self.icon_size),
                        (0, 0, 0, 0))
        ImageDraw.Draw(img).rounded_rectangle(
            [0, 0, self.icon_size - 1, self.icon_size - 1],
            radius=CORNER_RADIUS * self.icon_size // NATIVE_SIZE,
            fill=ACCENT_RGB,
        )
        return img
