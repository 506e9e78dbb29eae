"""
Tests for the BackgroundRemovalService composition root.
"""

import pytest

from boothmatte import session as session_module
from boothmatte.algorithms import MODNetMatting, ModelType, PPLiteSegMatting
from boothmatte.config import LiveViewMode, MattingSettings
from boothmatte.errors import ModelUnavailableError
from boothmatte.live import LiveMode
from boothmatte.registry import ModelRegistry
from boothmatte.service import BackgroundRemovalService

from conftest import (
    FakeOrtSession,
    StubRegistry,
    disc_alpha,
    frame_bytes,
    make_modnet,
    make_ppliteseg,
    make_rvm,
    modnet_handler,
    rvm_handler,
)


@pytest.fixture
def modnet_registry(models_dir):
    model, _ = make_modnet(models_dir)
    return StubRegistry(models_dir, {ModelType.MODNET: lambda: model})


class TestLiveFrames:
    """Tests for process_live_frame."""

    def test_disabled_is_identity(self, models_dir, modnet_registry, inline_executor):
        settings = MattingSettings(models_dir=models_dir, enabled=False)
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)
        data = frame_bytes(64, 48)

        assert service.process_live_frame(data, 64, 48) is data
        assert service.is_initialized is False

    def test_live_view_switch_off_is_identity(self, models_dir, modnet_registry, inline_executor):
        settings = MattingSettings(models_dir=models_dir, live_view_enabled=False)
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)
        service.initialize()
        data = frame_bytes(64, 48)

        assert service.process_live_frame(data, 64, 48) is data

    def test_first_frame_passes_through_and_initializes(self, settings, modnet_registry, inline_executor):
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)
        data = frame_bytes(64, 48)

        first = service.process_live_frame(data, 64, 48)
        second = service.process_live_frame(data, 64, 48)

        assert first is data
        assert service.is_initialized is True
        assert second[:2] == b"\xff\xd8"
        assert service.try_get_latest_frame_info() == (64, 48, True)

    def test_latest_frame_info_before_any_frame(self, settings, modnet_registry, inline_executor):
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)

        assert service.try_get_latest_frame_info() == (0, 0, False)

    def test_switch_to_smooth_mode(self, models_dir, settings, inline_executor):
        lightweight, _ = make_modnet(models_dir)
        rvm, _ = make_rvm(models_dir, rvm_handler(lambda h, w: disc_alpha(h, w)))
        registry = StubRegistry(models_dir, {ModelType.MODNET: lambda: lightweight, ModelType.RVM: lambda: rvm})
        service = BackgroundRemovalService(settings, registry, inline_executor)
        service.initialize()
        assert service.live.mode is LiveMode.LIGHTWEIGHT

        service.update_settings(settings.replace(live_view_mode=LiveViewMode.SMOOTH))

        assert service.live.mode is LiveMode.RECURRENT
        output = service.process_live_frame(frame_bytes(128, 96), 128, 96)
        assert output[:2] == b"\xff\xd8"

    def test_reset_clears_cache(self, settings, modnet_registry, inline_executor):
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)
        service.initialize()
        service.process_live_frame(frame_bytes(64, 48), 64, 48)

        service.reset()

        assert service.try_get_latest_frame_info() == (0, 0, False)


class TestInitialization:
    """Tests for model selection order and fallbacks."""

    def test_fastest_available_model_wins(self, models_dir, settings, inline_executor):
        fast, _ = make_ppliteseg(models_dir, lambda feeds: {})
        slower, _ = make_modnet(models_dir)
        registry = StubRegistry(
            models_dir, {ModelType.PP_LITESEG: lambda: fast, ModelType.MODNET: lambda: slower}
        )
        service = BackgroundRemovalService(settings, registry, inline_executor)

        assert service.initialize() is True
        assert isinstance(service.model, PPLiteSegMatting)
        assert registry.created == [ModelType.PP_LITESEG]

    def test_failed_candidate_falls_through(self, models_dir, settings, inline_executor):
        slower, _ = make_modnet(models_dir)

        def corrupt():
            raise ModelUnavailableError("corrupt pp_liteseg.onnx")

        registry = StubRegistry(models_dir, {ModelType.PP_LITESEG: corrupt, ModelType.MODNET: lambda: slower})
        service = BackgroundRemovalService(settings, registry, inline_executor)

        assert service.initialize() is True
        assert isinstance(service.model, MODNetMatting)

    def test_no_models(self, settings, models_dir, inline_executor):
        service = BackgroundRemovalService(settings, StubRegistry(models_dir), inline_executor)

        assert service.initialize() is False
        assert service.is_initialized is False

    def test_disabled_skips_initialization(self, models_dir, modnet_registry, inline_executor):
        settings = MattingSettings(models_dir=models_dir, enabled=False)
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)

        assert service.initialize() is False
        assert modnet_registry.created == []

    def test_initialize_async(self, settings, modnet_registry, inline_executor):
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)

        assert service.initialize_async().result() is True
        assert service.initialize() is True
        assert modnet_registry.created == [ModelType.MODNET]


class TestStills:
    def test_lazy_initialization(self, settings, modnet_registry, inline_executor, photo_path):
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)

        result = service.remove_background(photo_path)

        assert service.is_initialized is True
        assert result.success is True
        assert result.degraded is False

    def test_missing_models_degrade(self, settings, models_dir, inline_executor, photo_path):
        service = BackgroundRemovalService(settings, StubRegistry(models_dir), inline_executor)

        result = service.remove_background(photo_path)

        assert result.success is True
        assert result.degraded is True

    def test_disabled_copies_original(self, models_dir, modnet_registry, inline_executor, photo_path):
        settings = MattingSettings(models_dir=models_dir, enabled=False)
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)

        result = service.remove_background(photo_path)

        assert result.success is True
        assert result.degraded is True
        assert "disabled" in result.error
        assert result.foreground_path == photo_path.with_name(f"{photo_path.stem}_nobg.png")
        assert result.foreground_path.exists()
        assert result.mask_path.exists()
        assert modnet_registry.created == []


class TestExecutionProviders:
    def test_gpu_preference_off_reports_inactive(self, monkeypatch, models_dir, inline_executor):
        (models_dir / MODNetMatting.FILE_NAME).write_bytes(b"onnx")
        calls = []

        def fake_session(path, sess_options=None, providers=None, provider_options=None):
            calls.append(list(providers))
            return FakeOrtSession([("input", [1, 3, 320, 320])], ["output"], modnet_handler, providers=providers)

        monkeypatch.setattr(session_module.ort, "InferenceSession", fake_session)
        settings = MattingSettings(models_dir=models_dir, use_gpu=False)
        service = BackgroundRemovalService(settings, ModelRegistry(models_dir), inline_executor)

        assert service.initialize() is True
        assert service.is_gpu_active() is False
        assert calls == [[session_module.CPU_PROVIDER]]
        assert "GPU disabled" in service.gpu_status()

    def test_gpu_setting_change_reloads(self, settings, modnet_registry, inline_executor):
        service = BackgroundRemovalService(settings, modnet_registry, inline_executor)
        service.initialize()
        model = service.model

        service.update_settings(settings.replace(use_gpu=True))

        assert service.is_initialized is False
        assert model.session.closed is True


class TestLifetime:
    def test_context_manager_closes(self, settings, modnet_registry):
        with BackgroundRemovalService(settings, modnet_registry) as service:
            service.initialize()
            model = service.model

        data = frame_bytes(64, 48)
        assert model.session.closed is True
        assert service.process_live_frame(data, 64, 48) is data
        assert service.initialize() is False
