"""Tests for the environment report."""

from __future__ import annotations

import shutil

import yaml

from gitty.check_env import build_report


class TestBuildReport:
    def test_report_shape(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GITTY_API_KEY", raising=False)
        monkeypatch.delenv("GROQ_API_KEY", raising=False)
        report = build_report(tmp_path / "voice.yaml", probe_endpoint=False)
        assert report["config"]["exists"] is False
        assert not (tmp_path / "voice.yaml").exists()
        assert report["deps"]["pyyaml"] is True
        assert report["binaries"]["git"] == shutil.which("git")
        assert report["llm"]["api_key_set"] is False
        assert report["llm"]["endpoint_ok"] is None

    def test_wake_assets_checked(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GITTY_WAKE_MODEL_DIR", raising=False)
        monkeypatch.delenv("GITTY_WAKE_KEYWORD", raising=False)
        models = tmp_path / "models"
        models.mkdir()
        (models / "melspectrogram.onnx").write_bytes(b"\0")
        path = tmp_path / "voice.yaml"
        path.write_text(yaml.safe_dump({"wake": {"model_dir": str(models), "keyword_model": str(models / "k.onnx")}}))

        report = build_report(path, probe_endpoint=False)
        assert report["wake"]["melspectrogram_ok"] is True
        assert report["wake"]["embedding_ok"] is False
        assert report["wake"]["keyword_model_ok"] is False

    def test_api_key_detected(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "k")
        report = build_report(tmp_path / "voice.yaml", probe_endpoint=False)
        assert report["llm"]["api_key_set"] is True
