from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from scenariomarket.config import Settings
from scenariomarket.domain.pricing import PricingCurve


def test_defaults_match_market_economy() -> None:
    settings = Settings()

    policy = settings.pricing_policy()
    assert policy.curve == PricingCurve.LINEAR
    assert (policy.base_price, policy.step) == (10, 1)
    split = settings.split_policy()
    assert (split.victim_bps, split.pool_bps, split.platform_bps) == (5000, 4000, 1000)
    assert settings.lock_duration() == timedelta(seconds=600)
    assert settings.gate_config().block_threshold == 70


def test_state_db_path_comes_from_env(monkeypatch, tmp_path) -> None:
    target = tmp_path / "other.sqlite"
    monkeypatch.setenv("STATE_DB_PATH", str(target))

    assert Settings().state_db_path == str(target)


def test_env_overrides_build_multiplicative_policy(monkeypatch) -> None:
    monkeypatch.setenv("PRICING_CURVE", "multiplicative")
    monkeypatch.setenv("PRICE_GROWTH", "1.25")
    monkeypatch.setenv("PRICE_CEILING", "500")

    policy = Settings().pricing_policy()

    assert policy.curve == PricingCurve.MULTIPLICATIVE
    assert policy.growth == Decimal("1.25")
    assert policy.ceiling == 500


def test_split_bps_must_sum_to_denominator(monkeypatch) -> None:
    monkeypatch.setenv("VICTIM_SHARE_BPS", "6000")

    with pytest.raises(ValidationError):
        Settings()


def test_warn_threshold_cannot_exceed_block_threshold(monkeypatch) -> None:
    monkeypatch.setenv("DUPLICATE_WARN_THRESHOLD", "80")

    with pytest.raises(ValidationError):
        Settings()


@pytest.mark.parametrize(
    ("alias", "value"),
    [
        ("BASE_PRICE", "-1"),
        ("PRICE_FLOOR", "0"),
        ("PRICE_GROWTH", "0.5"),
        ("PRICING_CURVE", "exponential"),
        ("DUPLICATE_BLOCK_THRESHOLD", "101"),
        ("STEAL_BUSY_MAX_ATTEMPTS", "0"),
    ],
)
def test_invalid_values_rejected(monkeypatch, alias: str, value: str) -> None:
    monkeypatch.setenv(alias, value)

    with pytest.raises(ValidationError):
        Settings()


def test_zero_lookback_disables_window(monkeypatch) -> None:
    monkeypatch.setenv("DUPLICATE_LOOKBACK_DAYS", "0")

    assert Settings().gate_config().lookback is None


def test_webhook_token_is_secret(monkeypatch) -> None:
    monkeypatch.setenv("EVENTS_WEBHOOK_TOKEN", "tok-123456789")

    settings = Settings()

    assert "tok-123456789" not in repr(settings)
    assert settings.events_webhook_token is not None
    assert settings.events_webhook_token.get_secret_value() == "tok-123456789"
