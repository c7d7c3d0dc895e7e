from __future__ import annotations

import threading

import pytest

from mail_engine import config
from mail_engine.auth import accounts
from mail_engine.core.folder_manager import FolderManager
from mail_engine.core.sync_manager import ProgressChannel, SyncEngine
from mail_engine.models import Rule, RuleAction, RuleCondition, SyncProgress
from mail_engine.storage import cache_repo, db
from mail_engine.utils.errors import (
    AccountDisabledError,
    SyncInProgressError,
    SyncTransportError,
)
from tests.fakes import make_account, make_raw


@pytest.fixture
def engine(mailbox):
    engine = SyncEngine(session_factory=mailbox.session_factory, max_workers=2)
    yield engine
    engine.shutdown()


def folder(account_id: int, remote_name: str):
    return cache_repo.get_folder_by_remote_name(account_id, remote_name)


def stored(account_id: int):
    return {m.message_id: m for m in cache_repo.list_account_emails(account_id)}


def test_first_sync_imports_and_second_sync_is_a_no_op(account, mailbox, engine) -> None:
    mailbox.deliver("INBOX", make_raw("m1@x.org", minutes=0))
    mailbox.deliver("INBOX", make_raw("m2@x.org", minutes=1), ["\\Seen"])

    first = engine.sync(account.id)
    inbox = folder(account.id, "INBOX")
    watermark = (inbox.last_uid, inbox.uid_validity, inbox.uid_next)
    second = engine.sync(account.id)

    assert first.new_messages == 2
    assert first.folders[0].full_fetch is True
    assert second.new_messages == 0
    assert second.folders[0].full_fetch is False
    assert len(stored(account.id)) == 2
    inbox = folder(account.id, "INBOX")
    assert (inbox.last_uid, inbox.uid_validity, inbox.uid_next) == watermark == (2, 100, 3)
    assert inbox.total_count == 2
    assert inbox.unread_count == 1
    assert cache_repo.list_unprocessed_emails(account.id) == []


def test_sync_records_success(account, mailbox, engine) -> None:
    accounts.record_sync_status(account.id, "old failure")

    engine.sync(account.id)

    refreshed = accounts.get_account(account.id)
    assert refreshed.sync_error is None
    assert refreshed.last_sync_at is not None


def test_sync_groups_replies_into_threads(account, mailbox, engine) -> None:
    mailbox.deliver("INBOX", make_raw("root@x.org", minutes=0))
    mailbox.deliver("INBOX", make_raw("reply@x.org", in_reply_to="root@x.org",
                                      references="<root@x.org>", minutes=5))

    engine.sync(account.id)

    messages = stored(account.id)
    assert messages["reply@x.org"].thread_id == "root@x.org"
    assert messages["root@x.org"].thread_id == "root@x.org"


def test_sync_applies_rules_to_new_messages_only(account, mailbox, engine) -> None:
    mailbox.deliver("INBOX", make_raw("before@x.org", subject="Invoice 1"))
    engine.sync(account.id)
    cache_repo.insert_rule(Rule(
        account_id=account.id,
        name="star invoices",
        priority=1,
        conditions=[RuleCondition("subject", "contains", "invoice")],
        actions=[RuleAction("star")],
    ))
    mailbox.deliver("INBOX", make_raw("after@x.org", subject="Invoice 2"))

    engine.sync(account.id)

    messages = stored(account.id)
    assert messages["after@x.org"].is_starred is True
    assert messages["before@x.org"].is_starred is False


def test_server_move_follows_the_message(account, mailbox, engine) -> None:
    mailbox.add_folder("Archive")
    uid = mailbox.deliver("INBOX", make_raw("m1@x.org"))
    engine.sync(account.id)
    original_id = stored(account.id)["m1@x.org"].id

    mailbox.move("INBOX", uid, "Archive")
    result = engine.sync(account.id)

    message = stored(account.id)["m1@x.org"]
    assert message.id == original_id
    assert message.folder_id == folder(account.id, "Archive").id
    assert message.uid == 1
    assert len(stored(account.id)) == 1
    assert sum(f.moved_messages for f in result.folders) == 1
    assert result.new_messages == 0


def test_local_move_survives_full_refetch(account, mailbox, engine) -> None:
    mailbox.deliver("INBOX", make_raw("m1@x.org"))
    engine.sync(account.id)
    work = FolderManager(account.id).create("Work")
    message = stored(account.id)["m1@x.org"]
    with db.transaction() as conn:
        cache_repo.move_email(message.id, work.id, conn)

    mailbox.reset("INBOX")
    result = engine.sync(account.id)

    assert result.folders[0].full_fetch is True
    assert result.new_messages == 0
    kept = stored(account.id)["m1@x.org"]
    assert kept.folder_id == work.id
    assert kept.uid is None


def test_uidvalidity_change_refetches_and_prunes(account, mailbox, engine) -> None:
    mailbox.deliver("INBOX", make_raw("keep@x.org", minutes=0))
    gone = mailbox.deliver("INBOX", make_raw("gone@x.org", minutes=1))
    mailbox.deliver("INBOX", make_raw("also@x.org", minutes=2))
    engine.sync(account.id)
    mailbox.expunge("INBOX", gone)

    mailbox.reset("INBOX")
    result = engine.sync(account.id)

    messages = stored(account.id)
    assert result.folders[0].full_fetch is True
    assert result.new_messages == 0
    assert set(messages) == {"keep@x.org", "also@x.org"}
    assert messages["also@x.org"].uid == 2
    inbox = folder(account.id, "INBOX")
    assert inbox.uid_validity == mailbox.boxes["INBOX"].uid_validity
    assert inbox.last_uid == 2
    assert inbox.total_count == 2


def test_connect_failures_are_retried(account, mailbox, engine) -> None:
    mailbox.connect_failures = 1
    mailbox.deliver("INBOX", make_raw("m1@x.org"))

    result = engine.sync(account.id)

    assert mailbox.connect_calls == 2
    assert result.new_messages == 1


def test_unreachable_server_records_error_and_raises(account, mailbox, engine) -> None:
    mailbox.connect_failures = 99

    with pytest.raises(SyncTransportError):
        engine.sync(account.id)

    assert mailbox.connect_calls == config.SYNC_CONNECT_RETRIES
    refreshed = accounts.get_account(account.id)
    assert refreshed.sync_error == "Connection refused"
    assert refreshed.last_sync_at is None


def test_failing_folder_gives_partial_result(account, mailbox, engine) -> None:
    mailbox.add_folder("Sent", ["\\Sent"])
    mailbox.deliver("INBOX", make_raw("m1@x.org"))
    mailbox.deliver("Sent", make_raw("s1@x.org"))
    mailbox.failing_folders.add("Sent")

    result = engine.sync(account.id)

    assert result.partial is True
    assert [f.remote_name for f in result.failed_folders] == ["Sent"]
    assert set(stored(account.id)) == {"m1@x.org"}
    assert folder(account.id, "Sent").last_uid == 0
    assert accounts.get_account(account.id).sync_error == "Failed to sync folders: Sent"

    mailbox.failing_folders.clear()
    retry = engine.sync(account.id)

    assert retry.partial is False
    assert set(stored(account.id)) == {"m1@x.org", "s1@x.org"}
    assert accounts.get_account(account.id).sync_error is None


def test_account_without_credentials_is_disabled(mailbox, engine) -> None:
    disabled = make_account(email_address="nopass@example.com", imap_password="")

    with pytest.raises(AccountDisabledError):
        engine.sync(disabled.id)
    assert mailbox.connect_calls == 0


def test_stream_ends_with_complete_record(account, mailbox, engine) -> None:
    mailbox.add_folder("Sent", ["\\Sent"])
    mailbox.deliver("INBOX", make_raw("m1@x.org"))

    records = list(engine.stream(account.id))

    phases = [r.phase for r in records]
    assert phases[0] == "connecting"
    assert phases[-1] == "complete"
    assert phases.count("syncing") == 2
    assert sum(1 for r in records if r.is_terminal) == 1
    assert records[-1].folders_done == records[-1].folders_total == 2


def test_stream_ends_with_error_record(account, mailbox, engine) -> None:
    mailbox.connect_failures = 99

    records = list(engine.stream(account.id))

    assert records[-1].phase == "error"
    assert "Could not sync" in records[-1].message


def test_progress_channel_drops_oldest_when_full() -> None:
    channel = ProgressChannel(maxsize=2)

    channel.emit(SyncProgress(phase="syncing", folders_done=0))
    channel.emit(SyncProgress(phase="syncing", folders_done=1))
    channel.emit(SyncProgress(phase="syncing", folders_done=2))
    channel.emit(SyncProgress(phase="complete"))

    records = list(channel)
    assert [r.phase for r in records][-1] == "complete"
    assert channel.dropped >= 1
    assert channel.closed is True


def test_concurrent_sync_requests_share_one_run(account, mailbox, engine) -> None:
    mailbox.deliver("INBOX", make_raw("m1@x.org"))
    mailbox.fetch_gate = threading.Event()
    results = {}

    first = threading.Thread(target=lambda: results.setdefault("first", engine.sync(account.id)))
    first.start()
    assert mailbox.fetch_started.wait(5)
    assert engine.is_syncing(account.id)
    opener = threading.Timer(0.3, mailbox.fetch_gate.set)
    opener.start()

    second = engine.sync(account.id)
    first.join(5)

    assert second is results["first"]
    assert mailbox.connect_calls == 1
    assert len(stored(account.id)) == 1
    assert not engine.is_syncing(account.id)


def test_waiting_caller_times_out(account, mailbox, engine, monkeypatch) -> None:
    monkeypatch.setattr(config, "SYNC_WAIT_TIMEOUT_SECONDS", 0.05)
    mailbox.fetch_gate = threading.Event()

    first = threading.Thread(target=engine.sync, args=(account.id,))
    first.start()
    assert mailbox.fetch_started.wait(5)
    try:
        with pytest.raises(SyncInProgressError):
            engine.sync(account.id)
    finally:
        mailbox.fetch_gate.set()
        first.join(5)


def test_stream_joining_a_running_sync_ends_with_its_result(account, mailbox, engine) -> None:
    mailbox.deliver("INBOX", make_raw("m1@x.org"))
    mailbox.fetch_gate = threading.Event()

    first = threading.Thread(target=engine.sync, args=(account.id,))
    first.start()
    assert mailbox.fetch_started.wait(5)
    opener = threading.Timer(0.3, mailbox.fetch_gate.set)
    opener.start()

    records = list(engine.stream(account.id))
    first.join(5)

    assert records[-1].is_terminal
    assert records[-1].phase == "complete"
    assert mailbox.connect_calls == 1


def test_stream_waiting_too_long_ends_with_error(account, mailbox, engine, monkeypatch) -> None:
    monkeypatch.setattr(config, "SYNC_WAIT_TIMEOUT_SECONDS", 0.05)
    mailbox.fetch_gate = threading.Event()

    first = threading.Thread(target=engine.sync, args=(account.id,))
    first.start()
    assert mailbox.fetch_started.wait(5)
    try:
        records = []
        consumer = threading.Thread(target=lambda: records.extend(engine.stream(account.id)))
        consumer.start()
        consumer.join(5)

        assert not consumer.is_alive()
        assert records[-1].is_terminal
        assert records[-1].phase == "error"
        assert "still running" in records[-1].message
    finally:
        mailbox.fetch_gate.set()
        first.join(5)


def test_different_accounts_sync_independently(account, mailbox, engine) -> None:
    other = make_account(email_address="other@example.com")
    mailbox.deliver("INBOX", make_raw("m1@x.org"))

    engine.sync(account.id)
    engine.sync(other.id)

    assert set(stored(account.id)) == {"m1@x.org"}
    assert set(stored(other.id)) == {"m1@x.org"}
