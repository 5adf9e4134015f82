"""
Tests for RunSettings validation and environment round trips
"""
import pytest
from crossbroker.config import RunSettings, parse_address, JAVA_INTEROP_FLAG
from crossbroker.errors import ConfigurationError
from crossbroker.models import AuthMode, BackendVariant, TestTarget


class TestParseAddress:

    def test_valid_address(self):
        assert parse_address("kafka-1:9093") == ("kafka-1", 9093)

    @pytest.mark.parametrize("address", ["", "kafka-1", ":9092", "kafka-1:abc", "kafka-1:0", "kafka-1:70000"])
    def test_invalid_address(self, address):
        with pytest.raises(ConfigurationError):
            parse_address(address)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_address("nope")


class TestRunSettings:

    def test_defaults_validate(self):
        settings = RunSettings().validate()
        assert settings.auth_mode == AuthMode.NONE
        assert settings.integration_enabled is False

    def test_integration_requires_addresses_and_backend(self):
        with pytest.raises(ConfigurationError, match="no broker connect addresses"):
            RunSettings(integration_enabled=True, backend=BackendVariant.KAFKA).validate()
        with pytest.raises(ConfigurationError, match="no backend variant"):
            RunSettings(integration_enabled=True, connect_addresses=["127.0.0.1:19091"]).validate()

    def test_invalid_verbosity(self):
        with pytest.raises(ConfigurationError, match="verbosity"):
            RunSettings(verbosity="loud").validate()

    def test_sasl_address_selects_auth_mode(self):
        settings = RunSettings(sasl_address="127.0.0.1:19094")
        assert settings.auth_mode == AuthMode.SASL_PLAIN

    def test_from_target_keeps_address_order(self):
        target = TestTarget(
            addresses=["invalid:19092", "127.0.0.1:19092"],
            sasl_address="127.0.0.1:19093",
            proxy_address="127.0.0.1:1080",
            feature_flags={JAVA_INTEROP_FLAG},
        )
        settings = RunSettings.from_target(target, BackendVariant.KAFKA, verbosity="trace",
                                           resource_prefix="run-1-test-kafka")

        assert settings.connect_addresses == ["invalid:19092", "127.0.0.1:19092"]
        assert settings.integration_enabled is True
        assert settings.backend == BackendVariant.KAFKA
        assert settings.proxy_address == "127.0.0.1:1080"

    def test_to_env(self):
        settings = RunSettings(
            connect_addresses=["invalid:19092", "127.0.0.1:19092"],
            sasl_address="127.0.0.1:19093",
            proxy_address="127.0.0.1:1080",
            integration_enabled=True,
            backend=BackendVariant.KAFKA,
            verbosity="trace",
            feature_flags={JAVA_INTEROP_FLAG},
            resource_prefix="run-1",
        ).validate()
        env = settings.to_env()

        assert env == {
            "RUST_LOG": "trace",
            "RUST_BACKTRACE": "1",
            "KAFKA_CONNECT": "invalid:19092,127.0.0.1:19092",
            "KAFKA_SASL_CONNECT": "127.0.0.1:19093",
            "SOCKS_PROXY": "127.0.0.1:1080",
            "TEST_INTEGRATION": "1",
            "TEST_BROKER_IMPL": "kafka",
            "TEST_JAVA_INTEROPT": "1",
            "TEST_RESOURCE_PREFIX": "run-1",
        }

    def test_unit_only_env_omits_integration(self):
        env = RunSettings(verbosity="debug").to_env()
        assert "TEST_INTEGRATION" not in env
        assert "KAFKA_CONNECT" not in env
        assert env["RUST_LOG"] == "debug"

    def test_from_env(self):
        settings = RunSettings.from_env({
            "KAFKA_CONNECT": "invalid:9093, kafka-1:9093",
            "SOCKS_PROXY": "proxy:1080",
            "TEST_INTEGRATION": "1",
            "TEST_BROKER_IMPL": "Redpanda",
            "TEST_JAVA_INTEROPT": "true",
            "RUST_LOG": "TRACE",
        })

        assert settings.connect_addresses == ["invalid:9093", "kafka-1:9093"]
        assert settings.proxy_address == "proxy:1080"
        assert settings.integration_enabled is True
        assert settings.backend == BackendVariant.REDPANDA
        assert settings.verbosity == "trace"
        assert JAVA_INTEROP_FLAG in settings.feature_flags

    def test_from_env_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            RunSettings.from_env({"TEST_BROKER_IMPL": "pulsar"})

    def test_from_env_empty(self):
        settings = RunSettings.from_env({})
        assert settings.connect_addresses == []
        assert settings.integration_enabled is False
        assert settings.backend is None
