from __future__ import annotations

import pytest

from mail_engine.core.mail_service import MailService
from mail_engine.models import ComposeEmail, Draft, Label, Rule, RuleAction, RuleCondition
from mail_engine.storage import cache_repo
from mail_engine.utils.errors import (
    AccessDeniedError,
    ImmutableLabelError,
    LabelError,
    MessageNotFoundError,
    PendingSendNotFoundError,
    ValidationError,
)
from tests.fakes import make_account, make_folder, make_raw, store_message


@pytest.fixture
def service(mailbox, transport):
    service = MailService(session_factory=mailbox.session_factory, transport=transport)
    yield service
    service.close()


@pytest.fixture
def inbox(account):
    return make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")


@pytest.fixture
def stranger():
    """A second user with an account and one message of their own."""
    other = make_account(user_id=2, email_address="stranger@example.com")
    folder = make_folder(other.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    message = store_message(other.id, folder.id, message_id="theirs@x.org")
    return other, folder, message


def reply_to(account_id: int, **fields) -> ComposeEmail:
    values = dict(account_id=account_id, to=["bob@example.com"], subject="Hi", text_body="Body")
    values.update(fields)
    return ComposeEmail(**values)


def test_other_users_resources_are_denied(service, account, inbox, stranger) -> None:
    other, folder, message = stranger

    with pytest.raises(AccessDeniedError):
        service.get_message(1, message.id)
    with pytest.raises(AccessDeniedError):
        service.list_messages(1, folder.id)
    with pytest.raises(AccessDeniedError):
        service.sync_account(1, other.id)
    with pytest.raises(MessageNotFoundError):
        service.get_message(1, 424242)


def test_batch_operations_count_only_owned_messages(service, account, inbox, stranger) -> None:
    _, _, theirs = stranger
    first = store_message(account.id, inbox.id, message_id="m1@x.org")
    second = store_message(account.id, inbox.id, message_id="m2@x.org")
    ids = [first.id, second.id, theirs.id, 999999]

    assert service.batch_mark_read(1, ids) == 2
    assert service.batch_star(1, ids) == 2

    assert cache_repo.get_email(first.id).is_read is True
    assert cache_repo.get_email(theirs.id).is_read is False
    assert cache_repo.get_email(theirs.id).is_starred is False
    assert cache_repo.get_folder(inbox.id).unread_count == 0

    assert service.batch_delete(1, ids) == 2
    assert cache_repo.get_email(first.id) is None
    assert cache_repo.get_email(theirs.id) is not None


def test_batch_move_stays_within_the_target_account(service, account, inbox, stranger) -> None:
    _, _, theirs = stranger
    work = service.create_folder(1, account.id, "Work")
    mine = store_message(account.id, inbox.id, message_id="m1@x.org", uid=7)

    moved = service.batch_move(1, [mine.id, theirs.id], work.id)

    assert moved == 1
    stored = cache_repo.get_email(mine.id)
    assert stored.folder_id == work.id
    assert stored.uid is None
    assert cache_repo.get_folder(work.id).total_count == 1
    assert cache_repo.get_folder(inbox.id).total_count == 0


def test_move_message_across_accounts_is_rejected(service, account, inbox) -> None:
    second = make_account(email_address="second@example.com")
    elsewhere = make_folder(second.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    message = store_message(account.id, inbox.id)

    with pytest.raises(ValidationError):
        service.move_message(1, message.id, elsewhere.id)


def test_get_message_marks_read_and_loads_attachments(service, account, inbox) -> None:
    message = store_message(account.id, inbox.id, attachment=b"pdf")
    cache_repo.refresh_folder_counts([inbox.id])
    assert cache_repo.get_folder(inbox.id).unread_count == 1

    opened = service.get_message(1, message.id)

    assert opened.is_read is True
    assert [a.filename for a in opened.attachments] == ["report.pdf"]
    assert cache_repo.get_email(message.id).is_read is True
    assert cache_repo.get_folder(inbox.id).unread_count == 0


def test_zero_send_delay_sends_right_away(service, account, transport) -> None:
    send_id = service.queue_send(1, reply_to(account.id))

    assert send_id is None
    assert len(transport.sent) == 1
    assert service.pending_sends(1, account.id) == []


def test_reply_sets_threading_headers_and_answered_flag(service, account, inbox, transport) -> None:
    service.update_account(1, account.id, {"signature": "Cheers\nUser"})
    original = store_message(account.id, inbox.id, message_id="orig@x.org",
                             references="<root@x.org>")

    service.send_message(1, reply_to(account.id, reply_to_id=original.id, subject="Re: Hello"))

    sent = transport.sent[0]
    assert sent.in_reply_to == "<orig@x.org>"
    assert sent.references == "<root@x.org> <orig@x.org>"
    assert sent.text_body == "Body\n\n-- \nCheers\nUser"
    assert cache_repo.get_email(original.id).is_answered is True


def test_recipients_are_validated(service, account, transport) -> None:
    with pytest.raises(ValidationError):
        service.send_message(1, reply_to(account.id, to=[]))
    with pytest.raises(ValidationError):
        service.send_message(1, reply_to(account.id, to=["not-an-address"]))
    assert transport.sent == []


def test_draft_is_removed_after_send(service, account, transport) -> None:
    draft = service.save_draft(1, Draft(account_id=account.id, to=["bob@example.com"],
                                        subject="Later"))
    assert service.virtual_counts(1, account.id)["drafts"] == 1

    service.send_message(1, reply_to(account.id, draft_id=draft.id))

    assert service.list_drafts(1, account.id) == []


def test_queued_send_can_only_be_cancelled_by_owner(service, account, transport) -> None:
    service.update_send_delay(1, account.id, 10)

    send_id = service.queue_send(1, reply_to(account.id))

    assert [p.send_id for p in service.pending_sends(1, account.id)] == [send_id]
    with pytest.raises(AccessDeniedError):
        service.cancel_send(2, send_id)
    service.cancel_send(1, send_id)
    with pytest.raises(PendingSendNotFoundError):
        service.cancel_send(1, send_id)
    assert transport.sent == []


def test_explicit_delay_is_validated(service, account) -> None:
    with pytest.raises(ValidationError):
        service.queue_send(1, reply_to(account.id), delay_seconds=3600)


def test_failed_queued_send_is_kept_as_draft(service, account, transport) -> None:
    transport.fail = True
    send_id = service.queue_send(1, reply_to(account.id, subject="Important"), delay_seconds=30)

    assert service.send_queue.fire(send_id) is True

    drafts = service.list_drafts(1, account.id)
    assert [d.subject for d in drafts] == ["Important"]
    assert drafts[0].to == ["bob@example.com"]


def test_close_keeps_pending_sends_as_drafts(mailbox, transport, account) -> None:
    service = MailService(session_factory=mailbox.session_factory, transport=transport)
    service.queue_send(1, reply_to(account.id, subject="Unsent"), delay_seconds=30)

    service.close()

    assert [d.subject for d in cache_repo.list_drafts(account.id)] == ["Unsent"]
    assert transport.sent == []


def test_system_labels_cannot_be_changed(service, account) -> None:
    system = cache_repo.insert_label(Label(account_id=account.id, name="Important", is_system=True))
    custom = service.create_label(1, account.id, "Receipts", "#00ff00")

    with pytest.raises(ImmutableLabelError):
        service.delete_label(1, system.id)
    with pytest.raises(ImmutableLabelError):
        service.update_label(1, system.id, name="Other")
    with pytest.raises(LabelError):
        service.create_label(1, account.id, "Receipts")

    service.delete_label(1, custom.id)
    assert [l.name for l in service.list_labels(1, account.id)] == ["Important"]


def test_label_assignment_and_listing(service, account, inbox) -> None:
    label = service.create_label(1, account.id, "Travel")
    message = store_message(account.id, inbox.id)

    assert service.assign_label(1, message.id, label.id) is True
    assert service.assign_label(1, message.id, label.id) is False
    page = service.list_messages_by_label(1, label.id)
    assert [m.id for m in page.items] == [message.id]
    assert service.unassign_label(1, message.id, label.id) is True
    assert service.message_labels(1, message.id) == []


def test_rules_get_sequential_priorities_and_can_be_reordered(service, account) -> None:
    def rule(name: str) -> Rule:
        return service.create_rule(1, account.id, Rule(
            name=name,
            conditions=[RuleCondition("subject", "contains", name)],
            actions=[RuleAction("star")],
        ))

    r1, r2, r3 = rule("one"), rule("two"), rule("three")
    assert [r.priority for r in (r1, r2, r3)] == [0, 1, 2]

    reordered = service.reorder_rules(1, account.id, [r3.id, r1.id, r2.id])

    assert [r.id for r in reordered] == [r3.id, r1.id, r2.id]
    with pytest.raises(ValidationError):
        service.reorder_rules(1, account.id, [r1.id, r2.id])
    with pytest.raises(ValidationError):
        service.reorder_rules(1, account.id, [r1.id, r1.id, r2.id])


def test_rule_targets_must_belong_to_the_account(service, account, stranger) -> None:
    _, their_folder, _ = stranger

    with pytest.raises(ValidationError):
        service.create_rule(1, account.id, Rule(
            name="steal",
            conditions=[RuleCondition("from", "contains", "@")],
            actions=[RuleAction("move", str(their_folder.id))],
        ))
    with pytest.raises(ValidationError):
        service.create_rule(1, account.id, Rule(name="no actions",
                                                conditions=[RuleCondition("from", "contains", "@")]))


def test_run_rule_through_service(service, account, inbox) -> None:
    created = service.create_rule(1, account.id, Rule(
        name="star alice",
        conditions=[RuleCondition("from", "equals", "alice@example.com")],
        actions=[RuleAction("star")],
    ))
    store_message(account.id, inbox.id)

    assert service.run_rule(1, created.id) == 1
    assert service.virtual_counts(1, account.id)["starred"] == 1
    assert service.list_starred(1, account.id).total == 1


def test_search_operators(service, account, inbox) -> None:
    report = store_message(account.id, inbox.id, message_id="a@x.org", subject="Quarterly report",
                           attachment=b"pdf", minutes=0)
    lunch = store_message(account.id, inbox.id, message_id="b@x.org", subject="Lunch",
                          sender="Bob <bob@example.com>", to="team@example.com",
                          body="report comes later", minutes=60 * 24)
    label = service.create_label(1, account.id, "Finance")
    service.assign_label(1, report.id, label.id)

    def ids(query: str) -> list:
        return [m.id for m in service.search(1, account.id, query)]

    assert ids("from:alice has:attachment") == [report.id]
    assert ids("report") == [lunch.id, report.id]
    assert ids("to:team") == [lunch.id]
    assert ids('subject:"quarterly report"') == [report.id]
    assert ids("label:finance") == [report.id]
    assert ids("before:2024-03-02") == [report.id]
    assert ids("after:2024-03-01") == [lunch.id]
    assert ids("is:unread bob") == [lunch.id]
    assert ids("100%") == []


def test_sync_then_browse_threads(service, account, mailbox) -> None:
    mailbox.deliver("INBOX", make_raw("root@x.org", minutes=0))
    mailbox.deliver("INBOX", make_raw("reply@x.org", in_reply_to="root@x.org", minutes=5))

    service.sync_account(1, account.id)

    inbox = cache_repo.get_folder_by_remote_name(account.id, "INBOX")
    page = service.list_threads(1, inbox.id)
    assert page.total == 1
    assert page.items[0].message_count == 2
    conversation = service.get_conversation(1, account.id, "root@x.org")
    assert [m.message_id for m in conversation] == ["root@x.org", "reply@x.org"]
    with pytest.raises(MessageNotFoundError):
        service.get_thread(1, account.id, "missing@x.org")


def test_delete_account_cancels_its_pending_sends(service, account, transport) -> None:
    send_id = service.queue_send(1, reply_to(account.id), delay_seconds=30)

    service.delete_account(1, account.id)

    assert service.send_queue.pending() == []
    with pytest.raises(PendingSendNotFoundError):
        service.send_queue.cancel_send(send_id)
    assert transport.sent == []
