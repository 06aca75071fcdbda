from __future__ import annotations

from pathlib import Path

import pytest

import shiftrec.config as config_module
from pipeline_support import write_fake_ffmpeg
from shiftrec import events


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("SHIFTREC_CONFIG", str(tmp_path / "missing-config.yaml"))
    for name in (
        "AUDIO_UPLOAD_DIR",
        "FFMPEG_BIN",
        "JWT_SECRET",
        "DEVICE_LOCK",
        "AUDIO_STORAGE_CAP_BYTES",
        "AUDIO_RETENTION_DAYS",
        "AUDIO_TRANSCODE_TIMEOUT_SEC",
        "FAKE_FFMPEG_MODE",
        "FAKE_FFMPEG_DELAY",
        "FAKE_FFMPEG_ENCODERS",
        "FAKE_FFMPEG_LOG",
        "LISTEN_HOST",
        "LISTEN_PORT",
        "DEV",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    events.reset_for_tests()
    yield
    events.reset_for_tests()
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)


@pytest.fixture
def fake_ffmpeg(tmp_path, monkeypatch) -> Path:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = write_fake_ffmpeg(bin_dir)
    monkeypatch.setenv("FAKE_FFMPEG_LOG", str(tmp_path / "ffmpeg-calls.log"))
    return script


@pytest.fixture
def audio_root(tmp_path) -> Path:
    root = tmp_path / "audio"
    root.mkdir()
    return root
