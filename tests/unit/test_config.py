"""
Unit Tests for Configuration Module

These tests verify that the configuration system works correctly:
- Built-in per-exchange defaults are applied
- Per-exchange overrides layer on top of the defaults
- Enabled exchanges keep the fixed iteration order
- Validation catches invalid configurations

Run with:
    pytest tests/unit/test_config.py -v
"""

import pytest
from pydantic import ValidationError

from core.config import EXCHANGE_ORDER, ConnectorSettings, Settings, validate_configuration


def make_settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestDefaults:

    def test_every_exchange_has_connector_settings(self):
        config = make_settings()
        for name in EXCHANGE_ORDER:
            assert isinstance(config.connector_settings(name), ConnectorSettings)

    def test_streaming_exchanges_have_ws_urls(self):
        config = make_settings()
        assert config.connector_settings("bybit").ws_url.startswith("wss://")
        assert config.connector_settings("okx").ws_url is None
        assert config.connector_settings("hyperliquid").ws_url is None

    def test_bybit_sends_application_heartbeats(self):
        assert make_settings().connector_settings("bybit").heartbeat_interval_ms == 20_000

    def test_aggregation_defaults(self):
        config = make_settings()
        assert config.aggregation_interval_ms == 5_000
        assert config.price_grouping == "base"
        assert config.funding_grouping == "base"

    def test_unknown_exchange_settings_raise(self):
        with pytest.raises(ValueError):
            make_settings().connector_settings("kraken")

    def test_connector_lookup_is_case_insensitive(self):
        config = make_settings()
        assert config.connector_settings("OKX") == config.connector_settings("okx")


class TestOverrides:

    def test_override_keeps_other_defaults(self):
        config = make_settings(exchanges={"bybit": {"fetch_interval_ms": 30_000}})
        bybit = config.connector_settings("bybit")

        assert bybit.fetch_interval_ms == 30_000
        assert bybit.ws_url == "wss://stream.bybit.com/v5/public/linear"
        assert bybit.max_reconnect_attempts == 10

    def test_edgex_usd_alias_can_be_disabled(self):
        config = make_settings(exchanges={"EDGEX": {"treat_usd_as_usdt": False}})
        assert config.connector_settings("edgex").treat_usd_as_usdt is False

    def test_invalid_override_is_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(exchanges={"okx": {"fetch_interval_ms": 0}})


class TestEnabledExchanges:

    def test_fixed_order_regardless_of_input_order(self):
        config = make_settings(enabled_exchanges="hyperliquid, OKX ,binance")
        assert config.enabled_exchanges_list == ["okx", "binance", "hyperliquid"]

    def test_disabled_connector_is_dropped(self):
        config = make_settings(
            enabled_exchanges="okx,bybit",
            exchanges={"bybit": {"enabled": False}},
        )
        assert config.enabled_exchanges_list == ["okx"]

    def test_cors_origins_list(self):
        config = make_settings(cors_origins="http://a.test, http://b.test,")
        assert config.cors_origins_list == ["http://a.test", "http://b.test"]


class TestValidation:

    def test_defaults_are_valid(self):
        validate_configuration(make_settings())

    def test_unknown_exchange(self):
        with pytest.raises(ValueError, match="kraken"):
            validate_configuration(make_settings(enabled_exchanges="okx,kraken"))

    def test_invalid_port(self):
        with pytest.raises(ValueError, match="port"):
            validate_configuration(make_settings(app_port=70000))

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="LOG_LEVEL"):
            validate_configuration(make_settings(log_level="LOUD"))

    @pytest.mark.parametrize("field, value", [
        ("price_grouping", "settlement"),
        ("funding_grouping", "symbol"),
    ])
    def test_invalid_grouping_mode(self, field, value):
        with pytest.raises(ValueError, match=field.upper()):
            validate_configuration(make_settings(**{field: value}))

    def test_non_positive_intervals(self):
        with pytest.raises(ValueError):
            validate_configuration(make_settings(aggregation_interval_ms=0))
