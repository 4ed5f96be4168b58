"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from livelabel.config import Settings
from livelabel.ml.model_manager import MODEL_REGISTRY, OnnxModelManager, TensorLayout, get_model_spec

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(models_dir: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": str(models_dir),
        "model_ttl": 300,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["inception_v3"]
        assert spec.name == "inception_v3"
        assert (spec.input_width, spec.input_height) == (299, 299)
        assert spec.layout is TensorLayout.NCHW

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            get_model_spec("nonexistent_model")

    def test_every_model_ships_labels(self) -> None:
        for spec in MODEL_REGISTRY.values():
            assert spec.labels_filename
            assert len(spec.mean) == len(spec.std) == 3


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "inception_v3.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_downloaded("inception_v3")

        mock_download.assert_called_once_with(
            repo_id="livelabel/classification-models",
            filename="inception_v3.onnx",
            subfolder=None,
            local_dir=str(tmp_path),
        )
        assert path == tmp_path / "inception_v3.onnx"

    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_cached_path(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "elsewhere.onnx"
        model_file.touch()

        mgr = OnnxModelManager(_make_settings(tmp_path))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["inception_v3"] = model_file

        path = mgr.ensure_downloaded("inception_v3")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_uses_file_in_models_dir(self, mock_download: MagicMock, tmp_path: Path) -> None:
        (tmp_path / "mobilenet_v2.onnx").touch()
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_downloaded("mobilenet_v2")

        mock_download.assert_not_called()
        assert path == tmp_path / "mobilenet_v2.onnx"

    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_ensure_labels_downloads_label_file(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "imagenet_labels.txt")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_labels("resnet50")

        assert path == tmp_path / "imagenet_labels.txt"
        assert mock_download.call_args.kwargs["filename"] == "imagenet_labels.txt"

    @patch("livelabel.ml.model_manager.InferenceSession")
    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "inception_v3.onnx")
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        mgr = OnnxModelManager(_make_settings(tmp_path))

        session1 = mgr.get_session("inception_v3")
        session2 = mgr.get_session("inception_v3")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("livelabel.ml.model_manager.InferenceSession")
    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "inception_v3.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        assert mgr.get_loaded_models() == []
        mgr.get_session("inception_v3")
        assert mgr.get_loaded_models() == ["inception_v3"]

    @patch("livelabel.ml.model_manager.InferenceSession")
    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_removes_expired(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "inception_v3.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=1))
        mgr.get_session("inception_v3")

        # Fake the last_used time to be in the past.
        mgr._sessions["inception_v3"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    @patch("livelabel.ml.model_manager.InferenceSession")
    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_unload_idle_skipped_when_ttl_zero(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "inception_v3.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=0))
        mgr.get_session("inception_v3")
        mgr._sessions["inception_v3"].last_used = time.monotonic() - 10_000

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == ["inception_v3"]

    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("livelabel.ml.model_manager.InferenceSession")
    @patch("livelabel.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "inception_v3.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))
        mgr.get_session("inception_v3")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
