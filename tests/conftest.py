"""Shared fixtures: every test gets its own database and key file."""
import pytest

from mail_engine import config
from mail_engine.storage import db
from tests.fakes import FakeMailbox, FakeTransport, make_account


@pytest.fixture(autouse=True)
def isolated_store(tmp_path, monkeypatch):
    """Point storage, key and log paths into ``tmp_path`` and create the schema."""
    monkeypatch.setattr(config, "SQLITE_DB_PATH", tmp_path / "mail_engine.db")
    monkeypatch.setattr(config, "SECRET_KEY_PATH", tmp_path / "secret.key")
    monkeypatch.setattr(config, "SECRET_KEY", None)
    monkeypatch.setattr(config, "LOG_DIR", tmp_path / "logs")
    monkeypatch.setattr(config, "SYNC_RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(config, "SYNC_WAIT_TIMEOUT_SECONDS", 5.0)
    db.init_db()
    return tmp_path


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def account():
    return make_account()
