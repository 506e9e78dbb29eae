"""
Non-blocking live-view matting.

Requests never wait on inference: each call returns the freshest published
frame (or its own input) immediately and, when no inference of the active
mode is in flight, hands the frame to a background task on the shared
executor. Stale frames are dropped rather than queued.
"""

from __future__ import annotations

import enum
import logging
import math
import threading
import time
from concurrent.futures import Executor, Future
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from PIL import Image

from .algorithms.base import ModelType
from .algorithms.rvm import RecurrentState, RVMMatting
from .algorithms.single_frame import SingleFrameMatting
from .background import BackgroundCache
from .config import AlphaShaping, LiveTuning, LiveViewMode, MatteHeuristics, MattingSettings
from .frames import FrameBuffer, LiveFrame, encode_jpeg
from .postprocess import (
    TemporalSmoother,
    analyze_alpha,
    apply_feathering,
    apply_mask,
    feather_radius,
    light_smooth,
    refine_mask_edges,
    resize_mask,
    shape_alpha_fast,
    threshold_edges_fast,
    to_uint8,
)
from .registry import ModelRegistry

logger = logging.getLogger(__name__)


class LiveMode(str, enum.Enum):
    IDLE = "idle"
    LIGHTWEIGHT = "lightweight"
    RECURRENT = "recurrent"


class StaleFrameError(Exception):
    """A live task outlived the mode generation it was started in."""


def should_use_rvm(settings: MattingSettings, rvm_available: bool) -> bool:
    """
    Responsive is the default and always picks the lightweight model; the
    manual override wins over every mode.
    """
    if settings.force_lightweight_live_view:
        return False
    if settings.live_view_mode in (LiveViewMode.AUTO, LiveViewMode.SMOOTH):
        return rvm_available
    return False


def align_up(value: int, multiple: int) -> int:
    if multiple <= 1:
        return value
    return ((value + multiple - 1) // multiple) * multiple


def downsample_ratio(
    width: int,
    height: int,
    reference_area: float,
    max_dimension: int,
    min_ratio: float = 0.25,
) -> float:
    area = width * height
    if area <= 0:
        return 1.0
    ratio = math.sqrt(reference_area / area)
    ratio = min(ratio, min(1.0, max_dimension / float(max(width, height))))
    ratio = max(min_ratio, ratio)
    return math.floor(ratio * 1000.0 + 0.5) / 1000.0


def inference_size(width: int, height: int, ratio: float, tuning: LiveTuning) -> Tuple[int, int]:
    def side(value: int) -> int:
        aligned = max(tuning.min_inference_side, align_up(int(value * ratio), tuning.inference_alignment))
        return max(1, min(value, aligned))

    return side(width), side(height)


def output_size(width: int, height: int, max_width: int) -> Tuple[int, int]:
    out_w = max(1, min(width, max_width))
    out_h = max(1, int(round(out_w / float(max(width, 1)) * height)))
    return out_w, out_h


class InlineExecutor(Executor):
    """Runs each submitted callable on the calling thread (offline replay)."""

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        return future


class LiveFrameCache:
    """Most recently completed live frame, replaced whole on publish."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frame: Optional[LiveFrame] = None

    def publish(self, frame: LiveFrame) -> None:
        with self._lock:
            self._frame = frame

    def latest(self) -> Optional[LiveFrame]:
        with self._lock:
            return self._frame

    def clear(self) -> None:
        with self._lock:
            self._frame = None

    def info(self) -> Tuple[int, int, bool]:
        frame = self.latest()
        if frame is None:
            return 0, 0, False
        return frame.width, frame.height, True


class FrameGate:
    """Minimum interval between inference starts. Zero disables throttling."""

    def __init__(self, min_interval_ms: int = 0, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_interval_ms = min_interval_ms
        self._clock = clock
        self._lock = threading.Lock()
        self._last: Optional[float] = None

    def ready(self) -> bool:
        if self.min_interval_ms <= 0:
            return True
        now = self._clock()
        with self._lock:
            if self._last is not None and (now - self._last) * 1000.0 < self.min_interval_ms:
                return False
            self._last = now
            return True


class FpsMeter:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._mode: Optional[str] = None
        self._count = 0
        self._since: Optional[float] = None
        self.last_fps: Dict[str, float] = {}

    def tick(self, mode: str) -> None:
        now = self._clock()
        with self._lock:
            if mode != self._mode:
                self._mode = mode
                self._count = 0
                self._since = None
            self._count += 1
            if self._since is None:
                self._since = now
                return
            elapsed = now - self._since
            if elapsed >= 1.0:
                fps = self._count / elapsed
                self.last_fps[mode] = fps
                logger.debug("Live view (%s) FPS: %.1f over %.0fms", mode, fps, elapsed * 1000.0)
                self._count = 0
                self._since = now


class LiveViewPipeline:
    """
    Per-stream live-view state machine: IDLE -> LIGHTWEIGHT | RECURRENT.

    The lightweight model is shared with the still pipeline and owned by the
    caller; the recurrent model is created and disposed here on mode
    switches, under a single session lock.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        settings: MattingSettings,
        executor: Executor,
        tuning: Optional[LiveTuning] = None,
        heuristics: Optional[MatteHeuristics] = None,
        shaping: Optional[AlphaShaping] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.settings = settings
        self.tuning = tuning or LiveTuning()
        self.heuristics = heuristics or MatteHeuristics()
        self.shaping = shaping or AlphaShaping()
        self._executor = executor

        self.cache = LiveFrameCache()
        self.background = BackgroundCache(self.tuning.background_ttl, self.tuning.fallback_color, clock)
        self.gate = FrameGate(settings.min_frame_interval_ms, clock)
        self.fps = FpsMeter(clock)
        self._smoothers = {
            mode: TemporalSmoother(self.tuning.current_weight, self.tuning.second_weight)
            for mode in (LiveMode.LIGHTWEIGHT, LiveMode.RECURRENT)
        }

        self._session_lock = threading.Lock()
        self._flag_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._busy = {LiveMode.LIGHTWEIGHT: False, LiveMode.RECURRENT: False}
        self._switching = False
        self._closed = False

        self._mode = LiveMode.IDLE
        self._target = LiveMode.IDLE
        self._rvm_failed = False
        self.lightweight: Optional[SingleFrameMatting] = None
        self.recurrent: Optional[RVMMatting] = None
        self._state: Optional[RecurrentState] = None
        self._state_size: Optional[Tuple[int, int]] = None
        # bumped on every teardown; results from older generations are dropped
        self._generation = 0

        self.scale_boost = 1.0
        self.boost_cooldown = 0

    @property
    def mode(self) -> LiveMode:
        return self._mode

    @property
    def target_mode(self) -> LiveMode:
        return self._target

    @property
    def state(self) -> Optional[RecurrentState]:
        with self._state_lock:
            return self._state

    @property
    def generation(self) -> int:
        with self._state_lock:
            return self._generation

    def is_busy(self, mode: LiveMode) -> bool:
        with self._flag_lock:
            return self._busy.get(mode, False)

    # configuration

    def attach_lightweight(self, model: Optional[SingleFrameMatting]) -> None:
        self.lightweight = model
        self._target = self._resolve_target()

    def configure(self, settings: MattingSettings) -> None:
        if settings.background_path != self.settings.background_path:
            self.background.clear()
        self.settings = settings
        self.gate.min_interval_ms = settings.min_frame_interval_ms
        self._rvm_failed = False
        self._target = self._resolve_target()

    def _resolve_target(self) -> LiveMode:
        settings = self.settings
        if self._closed or not (settings.enabled and settings.live_view_enabled):
            return LiveMode.IDLE
        rvm_available = not self._rvm_failed and self.registry.is_available(ModelType.RVM)
        if should_use_rvm(settings, rvm_available):
            return LiveMode.RECURRENT
        if self.lightweight is not None:
            return LiveMode.LIGHTWEIGHT
        return LiveMode.IDLE

    # request path

    def process_frame(self, frame: FrameBuffer) -> bytes:
        """Never blocks and never raises."""
        generation = self.generation
        target = self._target
        mode = self._mode
        if target is LiveMode.IDLE:
            if mode is not LiveMode.IDLE:
                self.schedule_switch()
            return frame.data

        if mode is not target:
            self.schedule_switch()
            return self._latest_or(frame)

        with self._flag_lock:
            if self._busy[mode]:
                logger.debug("Dropping frame; %s inference in flight", mode.value)
                return self._latest_or(frame)
            self._busy[mode] = True

        if not self.gate.ready():
            self._release(mode)
            return self._latest_or(frame)

        try:
            self._executor.submit(self._run, mode, frame, generation)
        except RuntimeError:
            logger.debug("Executor rejected live frame task", exc_info=True)
            self._release(mode)
        return self._latest_or(frame)

    def _latest_or(self, frame: FrameBuffer) -> bytes:
        cached = self.cache.latest()
        return cached.data if cached is not None else frame.data

    def _release(self, mode: LiveMode) -> None:
        with self._flag_lock:
            self._busy[mode] = False

    # background tasks

    def _run(self, mode: LiveMode, frame: FrameBuffer, generation: int) -> None:
        try:
            image = frame.to_image()
            if mode is LiveMode.RECURRENT:
                result = self._process_rvm(image, generation)
            else:
                result = self._process_lightweight(image, generation)
            self._publish(result, generation)
            self.fps.tick(mode.value)
        except StaleFrameError:
            logger.debug("Discarding %s frame started before a mode switch", mode.value)
        except Exception:
            logger.debug("Live frame dropped (%s)", mode.value, exc_info=True)
        finally:
            self._release(mode)

    def schedule_switch(self) -> None:
        with self._flag_lock:
            if self._switching:
                return
            self._switching = True
        try:
            self._executor.submit(self.activate)
        except RuntimeError:
            logger.debug("Executor rejected mode switch", exc_info=True)
            with self._flag_lock:
                self._switching = False

    def activate(self) -> LiveMode:
        """
        Bring the active mode in line with the target mode. Tears the old
        mode down completely before the new one starts.
        """
        try:
            with self._session_lock:
                target = self._target
                previous = self._mode
                if target is previous:
                    return previous

                self._mode = LiveMode.IDLE
                self._dispose_recurrent()
                self._clear_live_state()

                if target is LiveMode.RECURRENT:
                    try:
                        model = self.registry.create_model(ModelType.RVM, self.settings.use_gpu)
                    except Exception:
                        logger.exception("Failed to load recurrent live-view model; using lightweight model.")
                        self._rvm_failed = True
                        target = LiveMode.LIGHTWEIGHT if self.lightweight is not None else LiveMode.IDLE
                        self._target = target
                    else:
                        self.recurrent = model
                        with self._state_lock:
                            self._state = model.initial_state()
                            self._state_size = None

                if target is LiveMode.LIGHTWEIGHT and self.lightweight is None:
                    target = LiveMode.IDLE
                self._mode = target
                logger.info("Live view mode %s -> %s", previous.value, target.value)
                return target
        finally:
            with self._flag_lock:
                self._switching = False

    def _dispose_recurrent(self) -> None:
        model, self.recurrent = self.recurrent, None
        if model is not None:
            model.close()
        with self._state_lock:
            self._state = None
            self._state_size = None

    def _clear_live_state(self) -> None:
        with self._state_lock:
            self._generation += 1
            self.cache.clear()
            for smoother in self._smoothers.values():
                smoother.reset()
            self.scale_boost = 1.0
            self.boost_cooldown = 0

    def reset(self) -> None:
        """Zero recurrent state and drop every cached frame and alpha map."""
        with self._state_lock:
            if self.recurrent is not None:
                self._state = self.recurrent.initial_state()
            self._state_size = None
        self._clear_live_state()
        self.background.clear()

    def unload(self) -> None:
        """Return to IDLE, disposing the recurrent session and all live state."""
        with self._session_lock:
            self._mode = LiveMode.IDLE
            self._dispose_recurrent()
            self._clear_live_state()
        self.lightweight = None
        self._target = self._resolve_target()

    def close(self) -> None:
        self._closed = True
        self.unload()
        self.background.clear()

    # frame processing

    def _check_generation(self, generation: int) -> None:
        # caller holds _state_lock
        if generation != self._generation:
            raise StaleFrameError(generation)

    def _current_state(self, model: RVMMatting, size: Tuple[int, int], generation: int) -> RecurrentState:
        with self._state_lock:
            self._check_generation(generation)
            if self._state is None or self._state_size != size:
                if self._state_size is not None:
                    logger.debug("Inference size changed to %dx%d; resetting recurrent state", *size)
                self._state = model.initial_state()
                self._state_size = size
            return self._state

    def _store_state(self, state: RecurrentState, size: Tuple[int, int], generation: int) -> None:
        with self._state_lock:
            self._check_generation(generation)
            self._state = state
            self._state_size = size

    def _smooth(self, mode: LiveMode, alpha: np.ndarray, generation: int) -> np.ndarray:
        with self._state_lock:
            self._check_generation(generation)
            return self._smoothers[mode].apply(alpha)

    def _update_boost(self, degenerate: bool, generation: int) -> None:
        tuning = self.tuning
        with self._state_lock:
            self._check_generation(generation)
            if degenerate:
                self.scale_boost = min(tuning.boost_cap, self.scale_boost * tuning.boost_step)
                self.boost_cooldown = tuning.boost_hold_frames
            elif self.boost_cooldown > 0:
                self.boost_cooldown -= 1
            else:
                self.scale_boost = max(1.0, self.scale_boost * tuning.boost_decay)

    def _publish(self, result: LiveFrame, generation: int) -> None:
        with self._state_lock:
            self._check_generation(generation)
            self.cache.publish(result)

    def _max_dimension(self) -> int:
        reference = self.tuning.reference_side
        cap = int(round(reference * self.tuning.boost_cap))
        return min(cap, int(round(reference * self.scale_boost)))

    def _process_rvm(self, image: Image.Image, generation: int) -> LiveFrame:
        model = self.recurrent
        if model is None:
            raise RuntimeError("Recurrent live-view model is not loaded.")
        tuning = self.tuning
        width, height = image.size
        out_w, out_h = output_size(width, height, tuning.max_output_width)

        ratio = downsample_ratio(
            width,
            height,
            float(tuning.reference_side * tuning.reference_side),
            self._max_dimension(),
            tuning.min_downsample_ratio,
        )
        size = inference_size(width, height, ratio, tuning)
        small = image if image.size == size else image.resize(size, Image.BILINEAR)

        result = model.step(small, self._current_state(model, size, generation), ratio)
        self._store_state(result.state, size, generation)

        stats = analyze_alpha(result.alpha, self.heuristics)
        logger.debug(
            "Alpha stats avg=%.2f center=%.2f border=%.2f max=%.2f invert=%s degenerate=%s",
            stats.mean,
            stats.center_mean,
            stats.border_mean,
            stats.maximum,
            stats.invert,
            stats.degenerate,
        )

        self._update_boost(stats.degenerate, generation)
        if stats.degenerate:
            logger.debug("Recurrent matte degenerate; using lightweight model for this frame")
            return self._process_lightweight(image, generation)

        alpha = 1.0 - result.alpha if stats.invert else result.alpha
        alpha = self._smooth(LiveMode.RECURRENT, alpha, generation)
        alpha = light_smooth(alpha)
        alpha = shape_alpha_fast(alpha, self.shaping)
        alpha = threshold_edges_fast(alpha)
        alpha = resize_mask(alpha, out_w, out_h, Image.BILINEAR)

        if result.foreground is not None and not stats.invert:
            colour = Image.fromarray((result.foreground * 255.0 + 0.5).astype(np.uint8))
        else:
            colour = image
        if colour.size != (out_w, out_h):
            colour = colour.resize((out_w, out_h), Image.BILINEAR)

        rgba = np.dstack([np.asarray(colour.convert("RGB")), to_uint8(alpha)])
        return self._finish(Image.fromarray(rgba))

    def _process_lightweight(self, image: Image.Image, generation: int) -> LiveFrame:
        model = self.lightweight
        if model is None:
            raise RuntimeError("Lightweight live-view model is not loaded.")
        width, height = image.size
        out_w, out_h = output_size(width, height, self.tuning.max_output_width)
        working = image if image.size == (out_w, out_h) else image.resize((out_w, out_h), Image.BOX)

        alpha = resize_mask(model.predict(working), out_w, out_h, Image.BILINEAR)
        alpha = self._smooth(LiveMode.LIGHTWEIGHT, alpha, generation)
        level = max(3, self.settings.edge_refinement // 2)
        alpha = refine_mask_edges(alpha, level)
        alpha = apply_feathering(alpha, feather_radius(level))
        alpha = threshold_edges_fast(alpha)

        rgba = apply_mask(np.asarray(working.convert("RGB")), to_uint8(alpha))
        return self._finish(Image.fromarray(rgba))

    def _finish(self, foreground: Image.Image) -> LiveFrame:
        composed = self.background.composite(foreground, self.settings.background_path)
        data = encode_jpeg(composed, self.tuning.jpeg_quality)
        return LiveFrame(data=data, width=composed.width, height=composed.height)
