"""Tests for vigil.config — paths, camera lists and persisted settings."""

import json
import os

import pytest
from PySide6.QtCore import QSettings

from vigil import config
from vigil.models import ExportOptions


@pytest.fixture
def settings(tmp_path) -> config.AppSettings:
    qs = QSettings(str(tmp_path / "camvigil.ini"), QSettings.Format.IniFormat)
    return config.AppSettings(qs)


class TestPaths:
    def test_env_root(self, archive_root) -> None:
        assert config.archive_dir() == archive_root
        assert config.db_path(archive_root) == os.path.join(archive_root, "camvigil.sqlite")

    def test_default_root_in_home(self, monkeypatch) -> None:
        monkeypatch.delenv("CAMVIGIL_ARCHIVE_ROOT", raising=False)
        root = config.default_storage_root()
        assert root == os.path.join(os.path.expanduser("~"), "CamVigil_StoragePartition")


class TestCameraProfiles:
    def test_bare_list(self, tmp_path) -> None:
        path = tmp_path / "cams.json"
        path.write_text(json.dumps([{"url": "rtsp://a"}, {"url": "rtsp://b", "displayName": "B"}]))
        profiles = config.load_camera_profiles(str(path))
        assert [p.url for p in profiles] == ["rtsp://a", "rtsp://b"]
        assert profiles[1].display_name == "B"

    def test_wrapped_list_roundtrip(self, tmp_path, two_cameras) -> None:
        path = tmp_path / "cams.json"
        config.save_camera_profiles(str(path), two_cameras)
        assert "cameras" in json.loads(path.read_text())
        assert config.load_camera_profiles(str(path)) == two_cameras

    def test_missing_url(self, tmp_path) -> None:
        path = tmp_path / "cams.json"
        path.write_text(json.dumps([{"displayName": "nameless"}]))
        with pytest.raises(ValueError, match="no url"):
            config.load_camera_profiles(str(path))

    def test_not_a_list(self, tmp_path) -> None:
        path = tmp_path / "cams.json"
        path.write_text(json.dumps({"cameras": "rtsp://a"}))
        with pytest.raises(ValueError):
            config.load_camera_profiles(str(path))


class TestAppSettings:
    def test_defaults(self, settings) -> None:
        assert settings.segment_duration == 300
        assert settings.retention_days == 0
        assert settings.max_archive_gb == 0.0
        assert settings.export_options() == ExportOptions()

    def test_recording_values_persist(self, settings) -> None:
        settings.segment_duration = 120
        settings.retention_days = 14
        settings.max_archive_gb = 1.5
        assert settings.segment_duration == 120
        assert settings.retention_days == 14
        assert settings.max_archive_gb == 1.5

    def test_export_options_persist(self, tmp_path) -> None:
        ini = str(tmp_path / "camvigil.ini")
        first = config.AppSettings(QSettings(ini, QSettings.Format.IniFormat))
        opts = ExportOptions(precise=True, crf=21, base_name="gate")
        first.set_export_options(opts)
        first.sync()

        second = config.AppSettings(QSettings(ini, QSettings.Format.IniFormat))
        assert second.export_options() == opts

    def test_corrupt_export_options(self, settings) -> None:
        settings._settings.setValue("exportOptions", "{not json")
        assert settings.export_options() == ExportOptions()
