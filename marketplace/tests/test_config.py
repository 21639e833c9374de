import pytest

from marketplace.app.config import load_payment_config, load_subscription_config


def test_subscription_defaults():
    config = load_subscription_config({})

    assert config.duration_days == 30
    assert config.grace_period_days == 3
    assert config.price_uzs == 1_200_000
    assert config.price_usd == 100
    assert config.initiation_ttl_minutes == 15
    assert config.expiry_hour_utc == 0
    assert config.expiry_enabled is True


def test_subscription_overrides():
    config = load_subscription_config(
        {
            "SUBSCRIPTION_DURATION_DAYS": "31",
            "GRACE_PERIOD_DAYS": "0",
            "SUBSCRIPTION_PRICE_USD": "250",
            "SUBSCRIPTION_EXPIRY_ENABLED": "off",
        }
    )

    assert config.duration_days == 31
    assert config.grace_period_days == 0
    assert config.price_usd == 250
    assert config.expiry_enabled is False


@pytest.mark.parametrize(
    "env",
    [
        {"SUBSCRIPTION_DURATION_DAYS": "0"},
        {"GRACE_PERIOD_DAYS": "-1"},
        {"SUBSCRIPTION_EXPIRY_HOUR_UTC": "24"},
        {"SUBSCRIPTION_PRICE_UZS": "lots"},
    ],
)
def test_subscription_config_rejects_invalid_values(env):
    with pytest.raises(ValueError):
        load_subscription_config(env)


def test_payment_config_selects_endpoints_by_mode():
    production = load_payment_config({})
    sandbox = load_payment_config({"PAYMENT_GATEWAY_TEST_MODE": "true"})

    assert production.checkout_base_url == "https://checkout.paycom.uz"
    assert production.api_url == "https://api.paycom.uz"
    assert sandbox.checkout_base_url == "https://checkout.test.paycom.uz"
    assert sandbox.api_url == "https://test.paycom.uz/api"


def test_payment_config_leaves_missing_credentials_empty():
    config = load_payment_config({"PAYMENT_GATEWAY_MERCHANT_ID": "   "})

    assert config.merchant_id is None
    assert config.secret_key is None
    assert config.signature_header == "X-Gateway-Signature"
    assert config.frontend_url == "http://localhost:5173"


def test_payment_config_normalises_urls_and_timeout():
    config = load_payment_config(
        {
            "PAYMENT_GATEWAY_CHECKOUT_URL": "https://pay.example/",
            "FRONTEND_URL": "https://market.example/",
            "PAYMENT_GATEWAY_TIMEOUT": "0.2",
        }
    )

    assert config.checkout_base_url == "https://pay.example"
    assert config.frontend_url == "https://market.example"
    assert config.request_timeout == 1.0
