import pytest

from reentrybot.persistence.audit import Audit
from reentrybot.persistence.db import DB
from reentrybot.persistence.state_store import StateStore
from reentrybot.runner.models import AccountCredentials, AccountRef
from reentrybot.tests.fakes import RecordingNotifier


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never hit a live exchange or a real bot token.
    """
    monkeypatch.setenv("BINANCE_ENV", "testnet")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")
    monkeypatch.setenv("SCHEDULER_AUTOSTART", "false")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "bot.db"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "state.db"))


@pytest.fixture
def store(db):
    return StateStore(db)


@pytest.fixture
def audit(db, tmp_path):
    return Audit(db, str(tmp_path / "audit.jsonl"))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def account():
    return AccountRef("u1", "binance")


@pytest.fixture
def creds(store):
    c = AccountCredentials(user_id="u1", exchange="binance", api_key="k", api_secret="s", chat_id="42")
    store.save_account(c)
    return c
