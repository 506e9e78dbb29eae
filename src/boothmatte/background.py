from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from PIL import Image

logger = logging.getLogger(__name__)


def resize_to_cover(image: Image.Image, width: int, height: int) -> Image.Image:
    """
    Scale so the image fully covers width x height, then centre-crop to
    exactly that size. Never letterboxes.
    """
    width, height = max(1, width), max(1, height)
    src_w, src_h = max(1, image.width), max(1, image.height)
    scale = max(width / src_w, height / src_h)
    scaled_w = max(width, int(round(src_w * scale)))
    scaled_h = max(height, int(round(src_h * scale)))
    scaled = image.resize((scaled_w, scaled_h), Image.LANCZOS)
    left = (scaled_w - width) // 2
    top = (scaled_h - height) // 2
    return scaled.crop((left, top, left + width, top + height))


def composite_over(foreground: Image.Image, background: Image.Image) -> Image.Image:
    """Alpha-composite an RGBA foreground over a same-sized background."""
    if background.size != foreground.size:
        background = resize_to_cover(background, foreground.width, foreground.height)
    return Image.alpha_composite(background.convert("RGBA"), foreground.convert("RGBA"))


@dataclass(frozen=True)
class CachedBackground:
    image: Image.Image
    path: Path
    size: Tuple[int, int]
    loaded_at: float


class BackgroundCache:
    """
    Holds one background already resized to cover the last requested box.

    The cache entry is replaced whole; the lock only guards that swap, so
    decoding a new background never blocks readers of the old one.
    """

    def __init__(
        self,
        ttl: float = 60.0,
        fallback_color: Tuple[int, int, int] = (30, 30, 30),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.fallback_color = fallback_color
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: Optional[CachedBackground] = None

    def fallback(self, width: int, height: int) -> Image.Image:
        return Image.new("RGBA", (max(1, width), max(1, height)), self.fallback_color + (255,))

    def _is_fresh(self, entry: Optional[CachedBackground], path: Path, size: Tuple[int, int]) -> bool:
        return (
            entry is not None
            and entry.path == path
            and entry.size == size
            and (self._clock() - entry.loaded_at) < self.ttl
        )

    def get(self, path: Optional[Path], width: int, height: int) -> Image.Image:
        size = (max(1, width), max(1, height))
        if path is None or not Path(path).is_file():
            return self.fallback(*size)
        path = Path(path)

        with self._lock:
            entry = self._entry
        if self._is_fresh(entry, path, size):
            return entry.image

        try:
            with Image.open(path) as source:
                image = resize_to_cover(source.convert("RGBA"), *size)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load background %s: %s", path, exc)
            return self.fallback(*size)

        logger.debug("Loaded background %s at %dx%d", path, *size)
        entry = CachedBackground(image=image, path=path, size=size, loaded_at=self._clock())
        with self._lock:
            self._entry = entry
        return image

    def composite(self, foreground: Image.Image, path: Optional[Path]) -> Image.Image:
        background = self.get(path, foreground.width, foreground.height)
        return composite_over(foreground, background)

    def clear(self) -> None:
        with self._lock:
            self._entry = None

    @property
    def cached(self) -> Optional[CachedBackground]:
        with self._lock:
            return self._entry
