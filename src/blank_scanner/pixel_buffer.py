# src/blank_scanner/pixel_buffer.py
from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

import cv2 as cv
import fitz  # PyMuPDF
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ImageDecodeError

ImageSource = Union["PixelBuffer", str, Path, bytes]


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """
    Decoded raster, independent of any UI toolkit.
    data is HxWx3 uint8 in OpenCV BGR order (or HxW for single-channel input).
    """
    data: np.ndarray

    def __post_init__(self):
        if self.data.ndim not in (2, 3) or self.data.size == 0:
            raise ImageDecodeError(f"Unsupported pixel array shape {self.data.shape}")
        if self.data.ndim == 3 and self.data.shape[2] not in (3, 4):
            raise ImageDecodeError(f"Unsupported channel count {self.data.shape[2]}")
        if self.data.dtype != np.uint8:
            raise ImageDecodeError(f"Unsupported pixel dtype {self.data.dtype}, expected uint8")

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def bgr(self) -> np.ndarray:
        if self.data.ndim == 2:
            return cv.cvtColor(self.data, cv.COLOR_GRAY2BGR)
        if self.data.shape[2] == 4:
            return cv.cvtColor(self.data, cv.COLOR_BGRA2BGR)
        return self.data

    def luminance(self) -> np.ndarray:
        """HxW uint8 luminance (BT.601 weights, as cv.COLOR_BGR2GRAY)."""
        if self.data.ndim == 2:
            return self.data.astype(np.uint8, copy=False)
        return cv.cvtColor(self.bgr(), cv.COLOR_BGR2GRAY)

    @classmethod
    def from_pil(cls, img: Image.Image) -> "PixelBuffer":
        return cls(pil_to_bgr(img))


# ---------- conversions ----------
HIGH_DEPTH_MODES = ("I;16", "I;16L", "I;16B", "I;16N", "I", "F")


def _high_depth_to_gray8(img: Image.Image) -> np.ndarray:
    """16-bit / 32-bit / float grayscale -> uint8; convert("L") would clip it to white."""
    arr = np.asarray(img, dtype=np.float64)
    peak = float(arr.max()) if arr.size else 0.0
    if img.mode.startswith("I;16") or 255.0 < peak <= 65535.0:
        arr = arr / 257.0
    elif peak > 65535.0:
        arr = arr * (255.0 / peak)
    elif img.mode == "F" and 0.0 < peak <= 1.0:
        arr = arr * 255.0
    return np.clip(np.round(arr), 0, 255).astype(np.uint8)


def pil_to_bgr(img: Image.Image) -> np.ndarray:
    if img.mode in HIGH_DEPTH_MODES:
        return cv.cvtColor(_high_depth_to_gray8(img), cv.COLOR_GRAY2BGR)
    return cv.cvtColor(np.array(img.convert("RGB")), cv.COLOR_RGB2BGR)


def bgr_to_pil(img_bgr: np.ndarray) -> Image.Image:
    return Image.fromarray(cv.cvtColor(img_bgr, cv.COLOR_BGR2RGB))


# ---------- decoding ----------
def render_pdf_page(data: bytes, page_index: int = 0, dpi: int = 200) -> PixelBuffer:
    """Rasterize one PDF page (scanner output) via PyMuPDF."""
    zoom = dpi / 72.0
    try:
        with fitz.open(stream=data, filetype="pdf") as doc:
            if len(doc) < 1:
                raise ImageDecodeError("PDF has no pages")
            page = doc[page_index]
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            img = Image.frombytes("RGB", [pix.width, pix.height], pix.samples)
    except (RuntimeError, ValueError, IndexError) as e:
        raise ImageDecodeError(f"Could not render PDF page {page_index}: {e}") from e
    return PixelBuffer.from_pil(img)


def decode_image(data: bytes) -> PixelBuffer:
    """
    Decode encoded bytes. Pillow first (applies EXIF orientation of phone
    photos); cv.imdecode for formats Pillow cannot open.
    """
    if not data:
        raise ImageDecodeError("Empty image data")
    if data[:5] == b"%PDF-":
        return render_pdf_page(data)
    try:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            return PixelBuffer.from_pil(img)
    except Image.DecompressionBombError as e:
        raise ImageDecodeError(f"Image too large: {e}") from e
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError):
        pass
    try:
        arr = cv.imdecode(np.frombuffer(data, dtype=np.uint8), cv.IMREAD_COLOR)
    except cv.error as e:
        raise ImageDecodeError(f"Unsupported or corrupt image data: {e}") from e
    if arr is None:
        raise ImageDecodeError("Unsupported or corrupt image data")
    return PixelBuffer(arr)


def load_image(source: ImageSource) -> PixelBuffer:
    """PixelBuffer passes through; paths are read; raw bytes are decoded."""
    if isinstance(source, PixelBuffer):
        return source
    if isinstance(source, (bytes, bytearray)):
        return decode_image(bytes(source))
    p = Path(source).expanduser()
    try:
        data = p.read_bytes()
    except OSError as e:
        raise ImageDecodeError(f"Could not read image: {p} ({e})") from e
    try:
        return decode_image(data)
    except ImageDecodeError as e:
        raise ImageDecodeError(f"{p.name}: {e}") from e
