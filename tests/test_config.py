"""Tests for configuration loading and precedence."""

import pytest
import yaml

from arb_gnucash_importer.config import (
    API_KEY_ENV_VAR,
    API_URL_ENV_VAR,
    ImporterConfig,
    generate_default_config,
    get_default_config,
    load_config,
)
from arb_gnucash_importer.utils.exceptions import ConfigurationError

from factories import ALICE, BOB


class TestLoadConfig:
    """Test configuration files and environment precedence."""

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={})

        assert config.api.url == "https://api.arbiscan.io/api"
        assert config.api.api_key is None
        assert config.api.page_size == 1000
        assert config.ledger.gas_attribution == "sender"
        assert config.config_file_path is None

    def test_env_key_wins_over_config_file(self, write_file):
        path = write_file("config.yml", "api:\n  api_key: from-file\n")

        config = load_config(path, environ={API_KEY_ENV_VAR: "from-env"})

        assert config.api.api_key == "from-env"

    def test_config_key_used_without_env(self, write_file):
        path = write_file("config.yml", "api:\n  api_key: from-file\n")

        config = load_config(path, environ={})

        assert config.api.api_key == "from-file"

    def test_empty_env_key_is_ignored(self, write_file):
        path = write_file("config.yml", "api:\n  api_key: from-file\n")

        config = load_config(path, environ={API_KEY_ENV_VAR: ""})

        assert config.api.api_key == "from-file"

    def test_env_url_override(self, write_file):
        path = write_file("config.yml", "api:\n  url: https://example.invalid/api\n")

        config = load_config(path, environ={API_URL_ENV_VAR: "http://localhost:9999/api"})

        assert config.api.url == "http://localhost:9999/api"

    def test_missing_api_key_is_configuration_error(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={})

        with pytest.raises(ConfigurationError, match=API_KEY_ENV_VAR):
            config.require_api_key()

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "nope.yml", environ={})

    def test_default_file_in_working_directory(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config.yml").write_text("fetch:\n  concurrency: 7\n")

        config = load_config(environ={})

        assert config.fetch.concurrency == 7
        assert config.config_file_path == "config.yml"

    def test_deep_merge_keeps_other_defaults(self, write_file):
        path = write_file("config.yml", "fetch:\n  max_attempts: 2\n")

        config = load_config(path, environ={})

        assert config.fetch.max_attempts == 2
        assert config.fetch.concurrency == 4

    def test_toml_and_json_files(self, write_file):
        toml_path = write_file("config.toml", '[ledger]\ngas_attribution = "any_tracked"\n')
        json_path = write_file("config.json", '{"export": {"format": "json"}}')

        assert load_config(toml_path, environ={}).ledger.gas_attribution == "any_tracked"
        assert load_config(json_path, environ={}).export.format == "json"

    def test_unparsable_file(self, write_file):
        path = write_file("config.yml", "api: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Failed to read"):
            load_config(path, environ={})

    def test_invalid_value(self, write_file):
        path = write_file("config.yml", "fetch:\n  concurrency: 0\n")

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_config(path, environ={})

    @pytest.mark.parametrize("content", ["api:\n", "api: [1, 2]\n", "fetch: 5\n"])
    def test_section_must_be_mapping(self, write_file, content):
        path = write_file("config.yml", content)

        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_config(path, environ={"ARBISCAN_API_KEY": "env-key"})

    def test_invalid_address(self, write_file):
        path = write_file("config.yml", "addresses:\n  - not-an-address\n")

        with pytest.raises(ConfigurationError, match="invalid address"):
            load_config(path, environ={})

    def test_addresses_are_normalized_and_deduplicated(self):
        config = ImporterConfig(addresses=[ALICE.upper().replace("0X", "0x"), ALICE, BOB])

        assert config.addresses == [ALICE, BOB]

    def test_unquoted_yaml_address_key(self, write_file):
        token = "0x00000000000000000000000000000000000000ff"
        path = write_file("config.yml", f"ledger:\n  known_tokens:\n    {token}: TEST\n")

        config = load_config(path, environ={})

        assert config.ledger.known_tokens == {token: "TEST"}


class TestGenerateDefaultConfig:
    """Test init-config output."""

    def test_generated_file_round_trips(self, tmp_path):
        path = tmp_path / "out" / "config.yml"

        generate_default_config(path)

        text = path.read_text()
        assert API_KEY_ENV_VAR in text
        assert yaml.safe_load(text) == get_default_config()
        assert load_config(path, environ={}).export.format == "csv"
