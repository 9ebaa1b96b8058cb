"""
Tests for configuration loading and saving
"""

import json
import os
import stat

import pytest

from cicada.config import (
    CONFIG_ENV_VAR,
    GITHUB_TOKEN_ENV_VAR,
    CicadaConfig,
    default_config_path,
    init_config_dirs,
    load_config,
    save_config,
)
from cicada.crypto.types import KeyAlgorithm
from cicada.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(GITHUB_TOKEN_ENV_VAR, raising=False)


class TestCicadaConfig:
    """Test cases for CicadaConfig"""

    def test_defaults(self):
        config = CicadaConfig()

        assert config.key_dir == os.path.expanduser("~/.cicada/keys")
        assert config.backup_dir == os.path.expanduser("~/.cicada/backups")
        assert config.key_provider == "cryptography"
        assert config.algorithm is KeyAlgorithm.ED25519
        assert config.warning_days == 30
        assert config.new_expiry_days == 365
        assert config.backup_keep == 5
        assert config.github_token is None

    def test_paths_expanded(self):
        config = CicadaConfig(key_dir="~/k", backup_dir="~/b")
        assert config.key_dir == os.path.expanduser("~/k")

    @pytest.mark.parametrize("kwargs,code", [
        ({'warning_days': -1}, "INVALID_VALUE"),
        ({'new_expiry_days': 0}, "INVALID_VALUE"),
        ({'backup_keep': "5"}, "INVALID_VALUE"),
        ({'verbosity': True}, "INVALID_VALUE"),
        ({'verbosity': 7}, "INVALID_VALUE"),
        ({'key_dir': ""}, "INVALID_PATH"),
        ({'key_provider': "hsm"}, "INVALID_PROVIDER"),
        ({'default_algorithm': "des"}, "INVALID_ALGORITHM"),
    ])
    def test_invalid(self, kwargs, code):
        with pytest.raises(ConfigurationError) as exc_info:
            CicadaConfig(**kwargs)
        assert exc_info.value.error_code == code

    def test_to_dict_sections(self):
        data = CicadaConfig(key_dir="/k", backup_dir="/b").to_dict()

        assert data['storage'] == {'key_dir': "/k", 'backup_dir': "/b", 'backup_keep': 5}
        assert data['security'] == {'key_provider': "cryptography", 'default_algorithm': "ed25519"}
        assert data['rotation'] == {'warning_days': 30, 'new_expiry_days': 365}
        assert 'github' not in data

    def test_from_dict_partial(self):
        config = CicadaConfig.from_dict({'rotation': {'warning_days': 7}, 'github': {'token': "t"}})
        assert config.warning_days == 7
        assert config.new_expiry_days == 365
        assert config.github_token == "t"

    def test_from_dict_bad_section(self):
        with pytest.raises(ConfigurationError) as exc_info:
            CicadaConfig.from_dict({'storage': []})
        assert exc_info.value.error_code == "INVALID_FORMAT"

    def test_from_dict_not_object(self):
        with pytest.raises(ConfigurationError):
            CicadaConfig.from_dict([1, 2])


class TestLoadSave:
    """Test cases for config files"""

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / "absent.json") == CicadaConfig()

    def test_roundtrip(self, tmp_path):
        """Test that a saved config loads back with private permissions"""
        path = tmp_path / "conf" / "config.json"
        config = CicadaConfig(key_dir=str(tmp_path / "k"), backup_dir=str(tmp_path / "b"),
                              warning_days=14, key_provider="ssh-keygen", github_username="octo")

        assert save_config(config, path) == path
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert load_config(path) == config

    def test_parse_error(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{broken")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(path)
        assert exc_info.value.error_code == "PARSE_ERROR"

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({'storage': {'backup_keep': -2}}))
        with pytest.raises(ConfigurationError):
            load_config(path)

    def test_token_from_environment(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        save_config(CicadaConfig(github_token="from-file"), path)
        monkeypatch.setenv(GITHUB_TOKEN_ENV_VAR, "from-env")

        assert load_config(path).github_token == "from-env"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "custom.json"))
        assert default_config_path() == tmp_path / "custom.json"

    def test_init_config_dirs(self, tmp_path):
        config = CicadaConfig(key_dir=str(tmp_path / "k"), backup_dir=str(tmp_path / "b"))
        init_config_dirs(config)

        for directory in (config.key_dir, config.backup_dir):
            assert stat.S_IMODE(os.stat(directory).st_mode) == 0o700
