import pytest
from pydantic import ValidationError

from orderpay.common.config import Settings


def _settings(**overrides):
    return Settings(_env_file=None, database_dsn="sqlite://", api_key="k", **overrides)


def test_defaults():
    settings = _settings()

    assert settings.supported_currencies == ["usd", "eur", "gbp", "cad"]
    assert settings.webhook_retention_days == 30


def test_currencies_are_normalised():
    assert _settings(supported_currencies=[" USD", "Eur"]).supported_currencies == ["usd", "eur"]


def test_bad_currency_code_is_rejected():
    with pytest.raises(ValidationError):
        _settings(supported_currencies=["dollars"])


@pytest.mark.parametrize("bounds", [{"min_amount": 0}, {"min_amount": 500, "max_amount": 100}])
def test_amount_bounds_are_checked(bounds):
    with pytest.raises(ValidationError):
        _settings(**bounds)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("WEBHOOK_WORKERS", "3")
    monkeypatch.setenv("SUPPORTED_CURRENCIES", '["jpy"]')

    settings = _settings()

    assert settings.webhook_workers == 3
    assert settings.supported_currencies == ["jpy"]
