"""
Tests for execution-provider selection and session lifetime.
"""

import threading

import numpy as np
import pytest

from boothmatte import session as session_module
from boothmatte.errors import ModelUnavailableError, SessionClosedError
from boothmatte.session import (
    CPU_PROVIDER,
    ExecutionStatus,
    InferenceSession,
    build_providers,
    cpu_thread_count,
    create_session,
)

from conftest import FakeOrtSession

CUDA = "CUDAExecutionProvider"
DML = "DmlExecutionProvider"


class RecordingSessionFactory:
    """Replacement for onnxruntime.InferenceSession that records provider lists."""

    def __init__(self, active=None, fail_on=None):
        self.active = active
        self.fail_on = fail_on
        self.calls = []

    def __call__(self, path, sess_options=None, providers=None, provider_options=None):
        self.calls.append(list(providers))
        if self.fail_on and self.fail_on in providers:
            raise RuntimeError(f"{self.fail_on} failed to initialize")
        active = list(providers) if self.active is None else list(self.active)
        return FakeOrtSession([("input", [1, 3, 4, 4])], ["output"], lambda feeds: {}, providers=active)


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "modnet.onnx"
    path.write_bytes(b"onnx")
    return path


class TestBuildProviders:
    def test_cpu_only_when_gpu_not_preferred(self):
        assert build_providers(False, [CUDA, CPU_PROVIDER]) == [CPU_PROVIDER]

    def test_cuda_first_with_cpu_fallback(self):
        providers = build_providers(True, [CUDA, CPU_PROVIDER])

        assert providers[0][0] == CUDA
        assert providers[0][1]["device_id"] == 0
        assert providers[-1] == CPU_PROVIDER
        assert len(providers) == 2

    def test_priority_order_wins_over_reported_order(self):
        providers = build_providers(True, [DML, CUDA, CPU_PROVIDER])

        assert providers[0][0] == CUDA

    def test_directml_when_cuda_missing(self):
        providers = build_providers(True, [DML, CPU_PROVIDER])

        assert providers[0] == (DML, {"device_id": 0})

    def test_no_gpu_provider_available(self):
        assert build_providers(True, [CPU_PROVIDER]) == [CPU_PROVIDER]


def test_cpu_thread_count_floor():
    assert cpu_thread_count() >= 2


class TestCreateSession:
    """Tests for create_session fallbacks."""

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ModelUnavailableError):
            create_session(tmp_path / "absent.onnx", False, ExecutionStatus())

    def test_gpu_disabled_uses_cpu_path(self, monkeypatch, model_file):
        """Disabling GPU preference builds a CPU-only session and reports GPU inactive."""
        factory = RecordingSessionFactory()
        monkeypatch.setattr(session_module.ort, "InferenceSession", factory)
        status = ExecutionStatus()

        session = create_session(model_file, False, status, name="MODNet")

        assert factory.calls == [[CPU_PROVIDER]]
        assert session.provider == CPU_PROVIDER
        assert session.is_gpu is False
        assert status.gpu_active is False
        assert "GPU Enabled: False" in status.describe()

    def test_gpu_failure_falls_back_to_cpu(self, monkeypatch, model_file):
        factory = RecordingSessionFactory(fail_on=CUDA)
        monkeypatch.setattr(session_module.ort, "InferenceSession", factory)
        monkeypatch.setattr(session_module.ort, "get_available_providers", lambda: [CUDA, CPU_PROVIDER])
        status = ExecutionStatus()

        session = create_session(model_file, True, status)

        assert factory.calls[0][0] == CUDA
        assert factory.calls[-1] == [CPU_PROVIDER]
        assert session.provider == CPU_PROVIDER
        assert status.gpu_active is False
        assert CUDA in status.describe()

    def test_gpu_active_when_session_reports_gpu_first(self, monkeypatch, model_file):
        factory = RecordingSessionFactory()
        monkeypatch.setattr(session_module.ort, "InferenceSession", factory)
        monkeypatch.setattr(session_module.ort, "get_available_providers", lambda: [CUDA, CPU_PROVIDER])
        status = ExecutionStatus()

        session = create_session(model_file, True, status)

        assert session.provider == CUDA
        assert status.gpu_active is True
        assert status.provider == CUDA

    def test_silent_cpu_fallback_is_not_gpu(self, monkeypatch, model_file):
        factory = RecordingSessionFactory(active=[CPU_PROVIDER])
        monkeypatch.setattr(session_module.ort, "InferenceSession", factory)
        monkeypatch.setattr(session_module.ort, "get_available_providers", lambda: [CUDA, CPU_PROVIDER])
        status = ExecutionStatus()

        session = create_session(model_file, True, status)

        assert len(factory.calls) == 1
        assert session.provider == CPU_PROVIDER
        assert status.gpu_active is False

    def test_cpu_failure_raises_model_unavailable(self, monkeypatch, model_file):
        factory = RecordingSessionFactory(fail_on=CPU_PROVIDER)
        monkeypatch.setattr(session_module.ort, "InferenceSession", factory)

        with pytest.raises(ModelUnavailableError):
            create_session(model_file, False, ExecutionStatus())


class TestInferenceSession:
    def test_run_returns_named_outputs(self):
        fake = FakeOrtSession(
            [("input", [1, 3, 2, 2])],
            ["output", "aux"],
            lambda feeds: {"output": feeds["input"] * 2, "aux": np.zeros(1)},
        )
        session = InferenceSession(fake, CPU_PROVIDER, name="fake")

        outputs = session.run({"input": np.ones((1, 3, 2, 2), dtype=np.float32)})

        assert set(outputs) == {"output", "aux"}
        assert float(outputs["output"].max()) == 2.0
        assert session.input_shape() == [1, 3, 2, 2]

    def test_run_after_close_raises(self):
        fake = FakeOrtSession([("input", [1])], ["output"], lambda feeds: {"output": np.zeros(1)})
        session = InferenceSession(fake, CPU_PROVIDER, name="fake")
        session.close()

        assert session.closed is True
        with pytest.raises(SessionClosedError):
            session.run({"input": np.zeros(1)})

    def test_run_waits_for_concurrent_close(self):
        fake = FakeOrtSession([("input", [1])], ["output"], lambda feeds: {"output": np.zeros(1)})
        session = InferenceSession(fake, CPU_PROVIDER, name="fake")
        errors = []

        def run():
            try:
                session.run({"input": np.zeros(1)})
            except SessionClosedError as exc:
                errors.append(exc)

        with session._lock:
            worker = threading.Thread(target=run)
            worker.start()
            worker.join(0.1)
            assert worker.is_alive()
            session._session = None
        worker.join(5)

        assert fake.calls == 0
        assert len(errors) == 1
