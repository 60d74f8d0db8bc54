import pytest

from vmconsole.config import (
    GATEWAY_NONE,
    GATEWAY_SANDBOX,
    GATEWAY_STRIPE,
    BillingConfig,
    load_billing_config,
    load_database_config,
)


def test_defaults_apply_when_environment_is_empty():
    config = load_billing_config({})

    assert config.gateway_name == GATEWAY_SANDBOX
    assert config.gateway_timeout_seconds == 20.0
    assert config.gateway_max_attempts == 3
    assert config.past_due_grace_days == 3
    assert config.cancel_after_days == 30
    assert config.currency == "USD"
    assert config.use_advisory_locks is True
    assert config.database.port == 5432
    assert config.gateway_configured is True


def test_values_are_parsed_from_environment():
    config = load_billing_config(
        {
            "BILLING_GATEWAY": "Stripe",
            "STRIPE_SECRET_KEY": "sk_test_123",
            "BILLING_GATEWAY_TIMEOUT": "7.5",
            "BILLING_GATEWAY_MAX_ATTEMPTS": "5",
            "BILLING_CANCEL_AFTER_DAYS": "45",
            "BILLING_CURRENCY": "eur",
            "BILLING_USE_ADVISORY_LOCKS": "off",
            "DB_PORT": "6543",
            "DB_CONNECT_TIMEOUT": "2.2",
        }
    )

    assert config.gateway_name == GATEWAY_STRIPE
    assert config.stripe_secret_key == "sk_test_123"
    assert config.gateway_timeout_seconds == 7.5
    assert config.gateway_max_attempts == 5
    assert config.cancel_after_days == 45
    assert config.currency == "EUR"
    assert config.use_advisory_locks is False
    assert config.database.port == 6543
    assert config.database.connect_timeout == 3
    assert config.gateway_configured is True


def test_stripe_without_secret_key_is_not_configured():
    config = load_billing_config({"BILLING_GATEWAY": "stripe"})

    assert config.gateway_configured is False


def test_none_gateway_is_not_configured():
    assert BillingConfig(gateway_name=GATEWAY_NONE).gateway_configured is False


@pytest.mark.parametrize(
    "env",
    [
        {"BILLING_GATEWAY": "paypal"},
        {"BILLING_CURRENCY": "DOLLARS"},
        {"BILLING_GATEWAY_TIMEOUT": "0"},
        {"BILLING_GATEWAY_MAX_ATTEMPTS": "three"},
        {"DB_CONNECT_TIMEOUT": "-1"},
    ],
)
def test_invalid_values_raise_value_error(env):
    with pytest.raises(ValueError):
        load_billing_config(env)


def test_database_connect_kwargs():
    config = load_database_config({"DB_HOST": "db.internal", "DB_NAME": "billing"})

    kwargs = config.as_connect_kwargs()

    assert kwargs["host"] == "db.internal"
    assert kwargs["dbname"] == "billing"
    assert kwargs["connect_timeout"] == 5
