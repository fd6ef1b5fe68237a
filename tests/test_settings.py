"""Tests for runtime settings."""

from pathlib import Path

from homestack.core.settings import HomestackSettings


class TestHomestackSettings:
    def test_roots_derive_from_data_root(self, tmp_path):
        settings = HomestackSettings(data_root=tmp_path / "DATA")

        assert settings.data_root == tmp_path / "DATA"
        assert settings.stacks_root == tmp_path / "DATA" / "Stacks"
        assert settings.app_data_root == tmp_path / "DATA" / "Apps"
        assert settings.database_path == tmp_path / "DATA" / "homestack.db"

    def test_relative_data_root_is_made_absolute(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        settings = HomestackSettings(data_root=Path("DATA/../DATA"))
        assert settings.data_root == Path.cwd() / "DATA"

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STORE_DATA_ROOT", str(tmp_path / "data"))
        monkeypatch.setenv("STORE_APP_DATA_ROOT", str(tmp_path / "appdata"))
        monkeypatch.setenv("IMAGE_PULL_TIMEOUT", "90")

        settings = HomestackSettings()

        assert settings.data_root == tmp_path / "data"
        assert settings.stacks_root == tmp_path / "data" / "Stacks"
        assert settings.app_data_root == tmp_path / "appdata"
        assert settings.pull_timeout == 90

    def test_ensure_data_root_directories(self, tmp_path):
        settings = HomestackSettings(data_root=tmp_path / "DATA")
        created = settings.ensure_data_root_directories()

        assert [path.name for path in created] == ["Apps", "Documents", "Media", "Download"]
        assert all(path.is_dir() for path in created)
