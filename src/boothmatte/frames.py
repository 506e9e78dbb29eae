from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image


@dataclass(frozen=True)
class FrameBuffer:
    """
    One camera frame: raw RGB/RGBA pixels, or a compressed image
    (JPEG live-view stream) whose byte count matches neither layout.
    """

    data: bytes
    width: int
    height: int

    @property
    def format(self) -> str:
        pixels = self.width * self.height
        if pixels > 0 and len(self.data) == pixels * 4:
            return "RGBA"
        if pixels > 0 and len(self.data) == pixels * 3:
            return "RGB"
        return "encoded"

    def to_image(self) -> Image.Image:
        fmt = self.format
        if fmt == "encoded":
            with Image.open(io.BytesIO(self.data)) as img:
                img.load()
                return img.convert("RGB")
        return Image.frombytes(fmt, (self.width, self.height), self.data).convert("RGB")


@dataclass(frozen=True)
class LiveFrame:
    """A fully encoded, published live-view result."""

    data: bytes
    width: int
    height: int


def encode_jpeg(image: Image.Image, quality: int = 90) -> bytes:
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()
