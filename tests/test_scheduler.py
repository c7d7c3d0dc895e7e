from __future__ import annotations

import threading

from mail_engine.core.scheduler import SyncScheduler
from mail_engine.core.sync_manager import SyncEngine
from tests.fakes import make_account, make_raw


def test_tick_syncs_every_account_with_credentials(account, mailbox) -> None:
    make_account(email_address="nopass@example.com", imap_password="")
    mailbox.deliver("INBOX", make_raw("m1@x.org"))
    engine = SyncEngine(session_factory=mailbox.session_factory, max_workers=2)
    try:
        futures = SyncScheduler(engine, interval=60).tick()
        results = [f.result(5) for f in futures]
    finally:
        engine.shutdown()

    assert [r.account_id for r in results] == [account.id]
    assert results[0].new_messages == 1


def test_tick_skips_accounts_already_syncing(account, mailbox) -> None:
    mailbox.fetch_gate = threading.Event()
    engine = SyncEngine(session_factory=mailbox.session_factory, max_workers=2)
    scheduler = SyncScheduler(engine, interval=60)
    try:
        first = scheduler.tick()
        assert mailbox.fetch_started.wait(5)
        second = scheduler.tick()
        mailbox.fetch_gate.set()
        first[0].result(5)
    finally:
        mailbox.fetch_gate.set()
        engine.shutdown()

    assert len(first) == 1
    assert second == []
    assert mailbox.connect_calls == 1


def test_start_and_stop_background_loop(account, mailbox) -> None:
    engine = SyncEngine(session_factory=mailbox.session_factory, max_workers=1)
    scheduler = SyncScheduler(engine, interval=60)
    try:
        scheduler.start()
        assert mailbox.fetch_started.wait(5)
    finally:
        scheduler.stop(5)
        engine.shutdown()

    assert mailbox.connect_calls == 1
