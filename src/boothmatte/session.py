from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import onnxruntime as ort

from .errors import ModelUnavailableError, SessionClosedError

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

# Platform GPU providers, most preferred first.
GPU_PROVIDER_PRIORITY: Tuple[str, ...] = (
    "CUDAExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
)

ProviderEntry = Union[str, Tuple[str, Dict[str, Any]]]


class ExecutionStatus:
    """
    Tracks whether the last created session runs on a GPU provider.

    One instance is shared by every session a registry creates, so
    diagnostics report the state of the process rather than of one model.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._gpu_active = False
        self._provider: Optional[str] = None
        self._detail = "Not initialized"

    @property
    def gpu_active(self) -> bool:
        return self._gpu_active

    @property
    def provider(self) -> Optional[str]:
        return self._provider

    def mark_gpu(self, provider: str) -> None:
        with self._lock:
            self._gpu_active = True
            self._provider = provider
            self._detail = f"{provider} acceleration active"

    def mark_cpu(self, reason: str) -> None:
        with self._lock:
            self._gpu_active = False
            self._provider = CPU_PROVIDER
            self._detail = reason

    def reset(self) -> None:
        with self._lock:
            self._gpu_active = False
            self._provider = None
            self._detail = "Not initialized"

    def describe(self) -> str:
        return f"GPU Enabled: {self._gpu_active} | Status: {self._detail}"


class InferenceSession:
    """
    Owns one onnxruntime session and the provider it ended up on.
    """

    def __init__(self, session: Any, provider: str, name: str = "") -> None:
        self._session = session
        self._lock = threading.Lock()
        self.provider = provider
        self.name = name
        self.input_names: List[str] = [node.name for node in session.get_inputs()]
        self.output_names: List[str] = [node.name for node in session.get_outputs()]

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._session is None

    @property
    def is_gpu(self) -> bool:
        return self.provider != CPU_PROVIDER

    def input_shape(self, index: int = 0) -> Sequence[Any]:
        session = self._require()
        return session.get_inputs()[index].shape

    def run(
        self,
        feeds: Mapping[str, np.ndarray],
        output_names: Optional[Sequence[str]] = None,
    ) -> Dict[str, np.ndarray]:
        session = self._require()
        names = list(output_names) if output_names else self.output_names
        outputs = session.run(names, dict(feeds))
        return {name: value for name, value in zip(names, outputs)}

    def close(self) -> None:
        with self._lock:
            self._session = None

    def _require(self) -> Any:
        with self._lock:
            session = self._session
        if session is None:
            raise SessionClosedError(f"Inference session '{self.name}' has been disposed.")
        return session

    def __repr__(self) -> str:
        state = "closed" if self.closed else self.provider
        return f"InferenceSession({self.name!r}, {state})"


def cpu_thread_count() -> int:
    return max(2, (os.cpu_count() or 2) // 2)


def build_providers(prefer_gpu: bool, available: Optional[Sequence[str]] = None) -> List[ProviderEntry]:
    """
    Provider list in priority order. The CPU provider is always last so
    onnxruntime can fall back when a GPU provider fails to bind a node.
    """
    providers: List[ProviderEntry] = []
    if prefer_gpu:
        if available is None:
            available = ort.get_available_providers()
        for name in GPU_PROVIDER_PRIORITY:
            if name not in available:
                continue
            if name == "CUDAExecutionProvider":
                providers.append(
                    (
                        name,
                        {
                            "device_id": 0,
                            "arena_extend_strategy": "kNextPowerOfTwo",
                            "cudnn_conv_use_max_workspace": "1",
                            "do_copy_in_default_stream": "1",
                        },
                    )
                )
            elif name == "DmlExecutionProvider":
                providers.append((name, {"device_id": 0}))
            else:
                providers.append((name, {}))
            break
    providers.append(CPU_PROVIDER)
    return providers


def _session_options(gpu: bool) -> ort.SessionOptions:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    options.enable_mem_pattern = True
    options.enable_cpu_mem_arena = True
    if gpu:
        # The GPU provider parallelises internally.
        options.intra_op_num_threads = 1
        options.inter_op_num_threads = 1
    else:
        threads = cpu_thread_count()
        options.intra_op_num_threads = threads
        options.inter_op_num_threads = threads
        options.execution_mode = ort.ExecutionMode.ORT_PARALLEL
    return options


def _split(providers: Sequence[ProviderEntry]) -> Tuple[List[str], List[Dict[str, Any]]]:
    names: List[str] = []
    options: List[Dict[str, Any]] = []
    for entry in providers:
        if isinstance(entry, tuple):
            names.append(entry[0])
            options.append(entry[1])
        else:
            names.append(entry)
            options.append({})
    return names, options


def create_session(
    model_path: Path,
    prefer_gpu: bool,
    status: ExecutionStatus,
    name: str = "",
) -> InferenceSession:
    """
    Create a session, trying GPU acceleration first when preferred.

    A GPU failure is not fatal: it is logged, the status is flipped to CPU
    and the session is rebuilt on the CPU provider. Only a missing or corrupt
    artifact makes this raise.
    """
    model_path = Path(model_path)
    if not model_path.is_file():
        raise ModelUnavailableError(f"Model file not found: {model_path}")

    if prefer_gpu:
        providers = build_providers(True)
        provider_names, provider_options = _split(providers)
        if len(provider_names) > 1:
            try:
                session = ort.InferenceSession(
                    model_path.as_posix(),
                    sess_options=_session_options(gpu=True),
                    providers=provider_names,
                    provider_options=provider_options,
                )
            except Exception as exc:
                logger.warning(
                    "%s failed to initialize for %s; retrying on CPU (%s).",
                    provider_names[0],
                    model_path.name,
                    exc,
                )
                status.mark_cpu(f"{provider_names[0]} failed: {exc}")
            else:
                active = session.get_providers()[0]
                if active != CPU_PROVIDER:
                    status.mark_gpu(active)
                    logger.info("Loaded %s with GPU acceleration (%s).", model_path.name, active)
                    return InferenceSession(session, active, name=name)
                logger.warning(
                    "%s was requested but onnxruntime fell back to CPU for %s.",
                    provider_names[0],
                    model_path.name,
                )
                status.mark_cpu(f"{provider_names[0]} did not initialize")
                return InferenceSession(session, CPU_PROVIDER, name=name)
        else:
            logger.warning("No GPU execution provider available; using CPU for %s.", model_path.name)
            status.mark_cpu("No GPU execution provider available")
    else:
        status.mark_cpu("GPU disabled in settings")

    try:
        session = ort.InferenceSession(
            model_path.as_posix(),
            sess_options=_session_options(gpu=False),
            providers=[CPU_PROVIDER],
        )
    except Exception as exc:
        raise ModelUnavailableError(f"Failed to load model {model_path}: {exc}") from exc
    logger.info("Loaded %s on CPU (%d threads).", model_path.name, cpu_thread_count())
    return InferenceSession(session, CPU_PROVIDER, name=name)
