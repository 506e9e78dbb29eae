from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
from PIL import Image

from .algorithms.single_frame import SingleFrameMatting
from .config import MattingSettings, Quality
from .postprocess import (
    apply_feathering,
    apply_mask,
    ensure_mask_size,
    feather_radius,
    refine_mask_edges,
    resize_mask,
    shape_alpha_high_quality,
    to_uint8,
)

logger = logging.getLogger(__name__)

MIN_PROCESSING_SIDE = 256
PROCESSING_ALIGNMENT = 32


def _round_to_multiple(value: int, multiple: int) -> int:
    return ((value + multiple // 2) // multiple) * multiple


def processing_size(width: int, height: int, quality: Quality) -> Tuple[int, int]:
    """
    Working resolution for a still: the quality tier's long edge, aspect
    preserved, each side at least 256 px and rounded to a multiple of 32.
    """
    quality = Quality(quality)
    scale = quality.long_edge / float(max(width, height, 1))
    target_w = max(MIN_PROCESSING_SIDE, int(width * scale))
    target_h = max(MIN_PROCESSING_SIDE, int(height * scale))
    return (
        _round_to_multiple(target_w, PROCESSING_ALIGNMENT),
        _round_to_multiple(target_h, PROCESSING_ALIGNMENT),
    )


def output_paths(image_path: Path) -> Tuple[Path, Path]:
    image_path = Path(image_path)
    return (
        image_path.with_name(f"{image_path.stem}_nobg.png"),
        image_path.with_name(f"{image_path.stem}_mask.png"),
    )


@dataclass
class RemovalResult:
    success: bool
    foreground_path: Optional[Path] = None
    mask_path: Optional[Path] = None
    elapsed: float = 0.0
    error: Optional[str] = None
    degraded: bool = False

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "foreground_path": str(self.foreground_path) if self.foreground_path else None,
            "mask_path": str(self.mask_path) if self.mask_path else None,
            "elapsed_seconds": self.elapsed,
            "error": self.error,
            "degraded": self.degraded,
        }


class StillCapturePipeline:
    """
    Synchronous per-photo background removal. Every request is processed to
    completion; nothing is dropped.
    """

    def __init__(self, model: Optional[SingleFrameMatting], settings: MattingSettings) -> None:
        self.model = model
        self.settings = settings

    def predict_mask(self, image: Image.Image, quality: Optional[Quality] = None) -> np.ndarray:
        """Float alpha with exactly the image's dimensions."""
        if self.model is None:
            raise RuntimeError("No matting model loaded.")
        quality = Quality(quality or self.settings.quality)
        rgb = image.convert("RGB")
        width, height = rgb.size

        work_size = processing_size(width, height, quality)
        working = rgb if work_size == rgb.size else rgb.resize(work_size, Image.LANCZOS)
        logger.debug("Processing %dx%d still at %dx%d (%s)", width, height, *work_size, quality.value)

        alpha = self.model.predict(working)
        alpha = resize_mask(alpha, width, height)
        return ensure_mask_size(alpha, width, height)

    def compose(self, image: Image.Image, alpha: np.ndarray) -> Tuple[Image.Image, Image.Image]:
        level = self.settings.edge_refinement
        if self.settings.capture_alpha_shaping:
            alpha = shape_alpha_high_quality(alpha)
        alpha = refine_mask_edges(alpha, level)
        alpha = apply_feathering(alpha, feather_radius(level))

        mask = to_uint8(alpha)
        rgba = apply_mask(np.asarray(image.convert("RGB")), mask)
        return Image.fromarray(rgba), Image.fromarray(mask)

    def remove_background(self, image_path: Path, quality: Optional[Quality] = None) -> RemovalResult:
        image_path = Path(image_path)
        start = time.perf_counter()
        if self.model is None:
            logger.warning("No matting model loaded; copying %s unmodified.", image_path.name)
            return self.fallback(image_path, "No matting model loaded", start)

        try:
            with Image.open(image_path) as img:
                image = img.convert("RGB")
            alpha = self.predict_mask(image, quality)
            foreground, mask = self.compose(image, alpha)
            foreground_path, mask_path = output_paths(image_path)
            foreground.save(foreground_path, format="PNG")
            mask.save(mask_path, format="PNG")
        except Exception as exc:
            logger.exception("Background removal failed for %s", image_path)
            return self.fallback(image_path, str(exc), start)

        elapsed = time.perf_counter() - start
        logger.info(
            "Removed background from %s (%dx%d) in %.3fs",
            image_path.name,
            image.width,
            image.height,
            elapsed,
        )
        return RemovalResult(
            success=True,
            foreground_path=foreground_path,
            mask_path=mask_path,
            elapsed=elapsed,
        )

    def fallback(self, image_path: Path, reason: str, start: Optional[float] = None) -> RemovalResult:
        """
        Write the original pixels as a fully opaque PNG and a solid mask so
        downstream consumers still find both files.
        """
        start = time.perf_counter() if start is None else start
        foreground_path, mask_path = output_paths(image_path)
        try:
            with Image.open(image_path) as img:
                rgba = img.convert("RGBA")
            rgba.putalpha(255)
            rgba.save(foreground_path, format="PNG")
            Image.new("L", rgba.size, 255).save(mask_path, format="PNG")
        except Exception as exc:
            logger.exception("Fallback copy failed for %s", image_path)
            return RemovalResult(
                success=False,
                elapsed=time.perf_counter() - start,
                error=f"{reason}; fallback failed: {exc}",
            )

        logger.warning("Returned unmodified copy of %s: %s", Path(image_path).name, reason)
        return RemovalResult(
            success=True,
            foreground_path=foreground_path,
            mask_path=mask_path,
            elapsed=time.perf_counter() - start,
            error=reason,
            degraded=True,
        )
