"""Tests for settings resolution."""

from decimal import Decimal

import pytest

from tokenengine.config import Settings, load_settings


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "listing_ttl_days: 7\n"
        "distribution_withholding_rate: 0.15\n"
        "settlement_url: http://settlement.internal:8100\n"
    )
    return path


@pytest.fixture
def empty_config(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    return path


def test_defaults(empty_config):
    settings = load_settings(environ={}, config_path=empty_config)

    assert settings == Settings()
    assert settings.distribution_withholding_rate == Decimal("0.10")
    assert settings.scheduler_interval_seconds == 0.0


def test_yaml_file(config_file):
    settings = load_settings(environ={}, config_path=config_file)

    assert settings.listing_ttl_days == 7
    assert settings.distribution_withholding_rate == Decimal("0.15")
    assert settings.settlement_url == "http://settlement.internal:8100"


def test_environment_overrides_file(config_file):
    settings = load_settings(
        environ={"LISTING_TTL_DAYS": "3", "SQLALCHEMY_ECHO": "yes", "LOG_LEVEL": "debug"},
        config_path=config_file,
    )

    assert settings.listing_ttl_days == 3
    assert settings.distribution_withholding_rate == Decimal("0.15")
    assert settings.sqlalchemy_echo is True
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("rate", ["1", "1.5", "-0.01", "ten percent"])
def test_invalid_withholding_rate(empty_config, rate):
    with pytest.raises(ValueError):
        load_settings(
            environ={"DISTRIBUTION_WITHHOLDING_RATE": rate}, config_path=empty_config
        )


def test_invalid_listing_ttl(empty_config):
    with pytest.raises(ValueError):
        load_settings(environ={"LISTING_TTL_DAYS": "0"}, config_path=empty_config)
