from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple


class Quality(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def long_edge(self) -> int:
        return _QUALITY_LONG_EDGE[self]


_QUALITY_LONG_EDGE = {
    Quality.LOW: 320,
    Quality.MEDIUM: 400,
    Quality.HIGH: 512,
}


class LiveViewMode(str, enum.Enum):
    RESPONSIVE = "responsive"
    SMOOTH = "smooth"
    AUTO = "auto"


def _parse_enum(enum_cls, value: Any):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {enum_cls.__name__} '{value}'. Choices: {choices}") from None


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"Invalid boolean '{value}'.")
    return bool(value)


@dataclass(frozen=True)
class AlphaShaping:
    """
    Alpha remapping curve shared by the fast (live) and high-quality (still)
    shaping profiles.
    """

    zero_cutoff: float = 0.01
    one_cutoff: float = 0.90
    weak_ceiling: float = 0.15
    weak_boost: float = 6.0
    knee_low: float = 0.02
    knee_high: float = 0.20
    gain: float = 2.5
    gamma: float = 0.5
    offset: float = 0.0
    # High-quality profile only.
    hq_zero_cutoff: float = 0.005
    hq_weak_scale: float = 8.0
    hq_weak_power: float = 0.45
    hq_weak_gain: float = 1.8
    hq_top_floor: float = 0.95
    hq_top_slope: float = 0.05
    contrast_softness: float = 0.2


@dataclass(frozen=True)
class MatteHeuristics:
    """
    Thresholds for degeneracy and inversion detection on sampled alpha.

    These were tuned by eye against rvm_mobilenetv3 weights and need
    recalibration whenever the recurrent model is swapped.
    """

    sample_grid: int = 32
    degenerate_max: float = 0.001
    degenerate_mean: float = 0.01
    inverted_center: float = 0.15
    inverted_border_ratio: float = 1.5
    auto_invert_mean: float = 0.15
    auto_invert_peak: float = 0.5


@dataclass(frozen=True)
class LiveTuning:
    reference_side: int = 256
    min_downsample_ratio: float = 0.25
    min_inference_side: int = 64
    inference_alignment: int = 16
    max_output_width: int = 640
    boost_step: float = 1.25
    boost_cap: float = 2.0
    boost_hold_frames: int = 30
    boost_decay: float = 0.95
    current_weight: float = 0.8
    second_weight: float = 0.9
    jpeg_quality: int = 90
    background_ttl: float = 60.0
    fallback_color: Tuple[int, int, int] = (30, 30, 30)


@dataclass(frozen=True)
class MattingSettings:
    enabled: bool = True
    live_view_enabled: bool = True
    quality: Quality = Quality.MEDIUM
    use_gpu: bool = True
    live_view_mode: LiveViewMode = LiveViewMode.RESPONSIVE
    force_lightweight_live_view: bool = False
    edge_refinement: int = 50
    background_path: Optional[Path] = None
    models_dir: Path = field(default_factory=lambda: Path("~/.cache/boothmatte").expanduser())
    capture_alpha_shaping: bool = False
    min_frame_interval_ms: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "quality", _parse_enum(Quality, self.quality))
        object.__setattr__(self, "live_view_mode", _parse_enum(LiveViewMode, self.live_view_mode))
        object.__setattr__(self, "edge_refinement", max(0, min(100, int(self.edge_refinement))))
        object.__setattr__(self, "min_frame_interval_ms", max(0, int(self.min_frame_interval_ms)))
        object.__setattr__(self, "models_dir", Path(self.models_dir).expanduser())
        if self.background_path is not None and str(self.background_path).strip():
            object.__setattr__(self, "background_path", Path(self.background_path).expanduser())
        else:
            object.__setattr__(self, "background_path", None)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "MattingSettings":
        """
        Build settings from a flat settings-source mapping.

        Unknown keys are ignored so the caller can hand over its whole
        settings store.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in values.items():
            if key not in known:
                continue
            if key in {"enabled", "live_view_enabled", "use_gpu",
                       "force_lightweight_live_view", "capture_alpha_shaping"}:
                value = _parse_bool(value)
            elif key in {"edge_refinement", "min_frame_interval_ms"}:
                value = int(value)
            kwargs[key] = value
        return cls(**kwargs)

    def replace(self, **changes: Any) -> "MattingSettings":
        return dataclasses.replace(self, **changes)
