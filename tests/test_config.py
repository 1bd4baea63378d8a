"""Tests for provider config loading and validation."""

from __future__ import annotations

import pytest

from garm_ec2.config import Config, Credentials, Timeouts, load_config
from garm_ec2.errors import ConfigError


class TestLoadConfig:
    def test_toml(self, config_file):
        config = load_config(config_file)
        assert config.region == "eu-central-1"
        assert config.subnet_id == "subnet-0123"
        assert config.security_group_ids == ["sg-0123"]
        assert config.credentials.access_key_id == "AKIATEST"
        assert config.timeouts == Timeouts()
        assert config.max_attempts == 1

    def test_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "region: us-west-2\n"
            "key_name: ops\n"
            "max_attempts: 3\n"
            "timeouts:\n"
            "  connect: 5\n"
            "credentials:\n"
            "  access_key_id: AKIATEST\n"
            "  secret_access_key: secret\n"
            "  session_token: token\n"
        )
        config = load_config(path)
        assert config.region == "us-west-2"
        assert config.key_name == "ops"
        assert config.max_attempts == 3
        assert config.timeouts.connect == 5
        assert config.timeouts.read == 60

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_undecodable_toml(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("region = \n")
        with pytest.raises(ConfigError, match="error decoding config"):
            load_config(path)

    def test_wrong_types(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text('region = "us-east-1"\nmax_attempts = "many"\n')
        with pytest.raises(ConfigError, match="error decoding config"):
            load_config(path)

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- region\n")
        with pytest.raises(ConfigError, match="table of settings"):
            load_config(path)

    def test_region_is_stripped(self, tmp_path):
        path = tmp_path / "blank.toml"
        path.write_text(
            'region = "   "\n'
            "[credentials]\n"
            'access_key_id = "a"\nsecret_access_key = "b"\nsession_token = "c"\n'
        )
        with pytest.raises(ConfigError, match="missing region"):
            load_config(path)


class TestValidateConfig:
    def test_valid(self, config):
        config.validate_config()

    def test_missing_region(self, config):
        with pytest.raises(ConfigError, match="missing region"):
            config.model_copy(update={"region": ""}).validate_config()

    @pytest.mark.parametrize("field", ["access_key_id", "secret_access_key", "session_token"])
    def test_each_credential_required(self, config, field):
        creds = config.credentials.model_copy(update={field: ""})
        with pytest.raises(ConfigError, match=f"missing {field}"):
            config.model_copy(update={"credentials": creds}).validate_config()

    def test_credentials_error_is_wrapped(self):
        config = Config(region="us-east-1", credentials=Credentials())
        with pytest.raises(ConfigError) as excinfo:
            config.validate_config()
        assert excinfo.value.message == "failed to validate credentials"
        assert excinfo.value.cause.operation == "validate_credentials"

    def test_session_kwargs(self, config):
        assert config.session_kwargs() == {
            "aws_access_key_id": "AKIATEST",
            "aws_secret_access_key": "secret",
            "aws_session_token": "token",
            "region_name": "us-east-1",
        }

    def test_max_attempts_bounds(self):
        with pytest.raises(ValueError):
            Config(region="us-east-1", max_attempts=0)
