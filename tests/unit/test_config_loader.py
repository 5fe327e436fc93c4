from pathlib import Path

import pytest

from nvr.config.loader import ConfigError, ConfigLoader, default_config_path


class TestConfigLoader:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = ConfigLoader(tmp_path / "config.yaml").load()
        assert config.servername is None
        assert config.log_level == "WARNING"

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert ConfigLoader(path).load().servername is None

    def test_load_values(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(
            "servername: /run/user/1000/nvim.123.0\n"
            "wait_timeout: 60\n"
            "log_level: info\n"
        )
        config = ConfigLoader(path).load()
        assert config.servername == "/run/user/1000/nvim.123.0"
        assert config.wait_timeout == 60.0
        assert config.log_level == "INFO"

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("servername: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            ConfigLoader(path).load()

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            ConfigLoader(path).load()

    def test_validation_error(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("wait_timeout: -5\n")
        with pytest.raises(ConfigError, match="Validation error") as exc_info:
            ConfigLoader(path).load()
        assert exc_info.value.path == path
        assert exc_info.value.exit_code == 7


class TestDefaultConfigPath:
    def test_uses_xdg_config_home(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert default_config_path() == tmp_path / "nvr" / "config.yaml"

    def test_falls_back_to_home(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert default_config_path() == tmp_path / ".config" / "nvr" / "config.yaml"
