from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Tuple

from .algorithms.single_frame import SingleFrameMatting
from .capture import RemovalResult, StillCapturePipeline
from .config import MattingSettings, Quality
from .frames import FrameBuffer
from .live import LiveViewPipeline
from .registry import ModelRegistry

logger = logging.getLogger(__name__)


class BackgroundRemovalService:
    """
    Composition root for the matting engine.

    One instance per process, constructed by the application and passed to
    whatever needs it. Owns the lightweight model shared by the still and
    live pipelines, the registry, and (unless one is injected) the worker
    pool used for live-view tasks.
    """

    def __init__(
        self,
        settings: Optional[MattingSettings] = None,
        registry: Optional[ModelRegistry] = None,
        executor: Optional[Executor] = None,
        max_workers: int = 2,
    ) -> None:
        self.settings = settings or MattingSettings()
        self.registry = registry or ModelRegistry(self.settings.models_dir)
        self.status = self.registry.status

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="boothmatte"
        )
        self._init_lock = threading.Lock()
        self._future_lock = threading.Lock()
        self._init_future: Optional[Future] = None
        self._initialized = False
        self._closed = False

        self.model: Optional[SingleFrameMatting] = None
        self.capture = StillCapturePipeline(None, self.settings)
        self.live = LiveViewPipeline(self.registry, self.settings, self._executor)

    def __enter__(self) -> "BackgroundRemovalService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> bool:
        """
        Load the first lightweight model that works, fastest first.
        Returns False when disabled or when every candidate fails.
        """
        if not self.settings.enabled or self._closed:
            return False

        with self._init_lock:
            if self._initialized:
                return True

            model = None
            for model_type in self.registry.lightweight_candidates():
                if not self.registry.is_available(model_type):
                    logger.debug("Skipping %s: no model file in %s", model_type.value, self.registry.models_dir)
                    continue
                try:
                    model = self.registry.create_model(model_type, self.settings.use_gpu)
                except Exception:
                    logger.exception("Failed to load %s; trying next model.", model_type.value)
                    continue
                break

            if model is None:
                logger.error("No matting model could be loaded from %s", self.registry.models_dir)
                return False

            self.model = model
            self.capture.model = model
            self.live.attach_lightweight(model)
            self._initialized = True
            logger.info("Background removal ready with %s. %s", model.descriptor.name, self.status.describe())

        self.live.schedule_switch()
        return True

    def initialize_async(self) -> Future:
        with self._future_lock:
            future = self._init_future
            if future is not None and not future.done():
                return future
            future = self._executor.submit(self.initialize)
            self._init_future = future
            return future

    def remove_background(self, image_path: Path, quality: Optional[Quality] = None) -> RemovalResult:
        """Never raises; failures come back as degraded or unsuccessful results."""
        if not self.settings.enabled:
            return self.capture.fallback(Path(image_path), "Background removal is disabled")
        if not self._initialized:
            try:
                self.initialize()
            except Exception:
                logger.exception("Initialization failed")
        return self.capture.remove_background(Path(image_path), quality)

    def process_live_frame(self, data: bytes, width: int, height: int) -> bytes:
        """Returns immediately with the freshest processed frame or `data` itself."""
        settings = self.settings
        if self._closed or not (settings.enabled and settings.live_view_enabled):
            return data
        if not self._initialized:
            try:
                self.initialize_async()
            except RuntimeError:
                logger.debug("Could not schedule initialization", exc_info=True)
            return data
        return self.live.process_frame(FrameBuffer(data, width, height))

    def try_get_latest_frame_info(self) -> Tuple[int, int, bool]:
        return self.live.cache.info()

    def is_gpu_active(self) -> bool:
        return self.status.gpu_active

    def gpu_status(self) -> str:
        return self.status.describe()

    def update_settings(self, settings: MattingSettings) -> None:
        previous = self.settings
        self.settings = settings
        self.capture.settings = settings

        if settings.use_gpu != previous.use_gpu or settings.models_dir != previous.models_dir:
            logger.info("Execution settings changed; models will be reloaded.")
            self._unload()
            self.registry.models_dir = settings.models_dir

        self.live.configure(settings)
        if self._initialized:
            self.live.schedule_switch()

    def reset(self) -> None:
        self.live.reset()

    def _unload(self) -> None:
        with self._init_lock:
            self.live.unload()
            model, self.model = self.model, None
            self.capture.model = None
            self._initialized = False
            if model is not None:
                model.close()
            self.status.reset()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.live.close()
        self._unload()
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        logger.debug("Background removal service closed")
