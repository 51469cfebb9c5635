import pytest

from reentrybot.exchange.binance.client import BinanceFuturesClient
from reentrybot.exchange.errors import ExchangeValidationError
from reentrybot.exchange.factory import build_adapter
from reentrybot.exchange.okx.client import OkxSwapClient
from reentrybot.runner.models import AccountCredentials


def test_binance_adapter_is_bound_to_account_keys():
    a = build_adapter(AccountCredentials("u1", "binance", "k1", "s1"))
    assert isinstance(a, BinanceFuturesClient)
    assert a.api_key == "k1"


def test_okx_adapter_carries_passphrase():
    a = build_adapter(AccountCredentials("u1", "OKX", "k", "s", passphrase="p"))
    assert isinstance(a, OkxSwapClient)
    assert a.passphrase == "p"


@pytest.mark.parametrize(
    "creds",
    [
        AccountCredentials("u1", "okx", "k", "s"),
        AccountCredentials("u1", "kraken", "k", "s"),
    ],
)
def test_unusable_credentials_are_rejected(creds):
    with pytest.raises(ExchangeValidationError):
        build_adapter(creds)
