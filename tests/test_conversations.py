from __future__ import annotations

from mail_engine.core.conversations import ThreadReconstructor, reference_chain
from mail_engine.models import EmailMessage
from mail_engine.storage import cache_repo, db
from tests.fakes import make_account, make_folder, store_message


def stored_thread(account_id: int, message_id: str) -> str:
    return cache_repo.get_email_by_message_id(account_id, message_id).thread_id


def add(threads: ThreadReconstructor, account_id: int, folder_id: int, **fields) -> EmailMessage:
    message = store_message(account_id, folder_id, **fields)
    threads.assign_thread(message)
    return message


def test_reference_chain_is_oldest_first_without_self() -> None:
    message = EmailMessage(
        message_id="c@x.org",
        references="<a@x.org> <b@x.org> <c@x.org>",
        in_reply_to="<b@x.org>",
    )

    assert reference_chain(message) == ["a@x.org", "b@x.org"]


def test_replies_join_the_thread_of_their_ancestor(account) -> None:
    inbox = make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    threads = ThreadReconstructor()

    a = add(threads, account.id, inbox.id, message_id="a@x.org", minutes=0)
    b = add(threads, account.id, inbox.id, message_id="b@x.org", in_reply_to="a@x.org",
            references="<a@x.org>", minutes=5)
    c = add(threads, account.id, inbox.id, message_id="c@x.org", in_reply_to="b@x.org",
            references="<a@x.org> <b@x.org>", minutes=10)

    assert a.thread_id == b.thread_id == c.thread_id == "a@x.org"
    assert stored_thread(account.id, "c@x.org") == "a@x.org"


def test_unknown_references_start_a_new_thread(account) -> None:
    inbox = make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    threads = ThreadReconstructor()

    orphan = add(threads, account.id, inbox.id, message_id="orphan@x.org",
                 in_reply_to="never-seen@x.org")

    assert orphan.thread_id == "orphan@x.org"


def test_threads_do_not_cross_accounts(account) -> None:
    other = make_account(email_address="other@example.com")
    mine = make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    theirs = make_folder(other.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    threads = ThreadReconstructor()

    add(threads, account.id, mine.id, message_id="root@x.org")
    reply = add(threads, other.id, theirs.id, message_id="reply@x.org", in_reply_to="root@x.org")

    assert reply.thread_id == "reply@x.org"


def test_reindex_repairs_grouping_and_is_idempotent(account) -> None:
    inbox = make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    threads = ThreadReconstructor()
    # Stored out of order: the reply arrived before its parent
    store_message(account.id, inbox.id, message_id="b@x.org", in_reply_to="a@x.org", minutes=5)
    store_message(account.id, inbox.id, message_id="a@x.org", minutes=0)

    first = threads.reindex(account.id)
    second = threads.reindex(account.id)

    assert first == 1
    assert second == 0
    assert stored_thread(account.id, "b@x.org") == "a@x.org"


def test_aggregates_reflect_member_writes_immediately(account) -> None:
    inbox = make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    archive = make_folder(account.id, "Archive", folder_type="archive", remote_name="Archive")
    threads = ThreadReconstructor()
    a = add(threads, account.id, inbox.id, message_id="a@x.org", subject="Plan", minutes=0)
    b = add(threads, account.id, inbox.id, message_id="b@x.org", subject="Re: Plan",
            sender="Bob <bob@example.com>", in_reply_to="a@x.org", minutes=5)

    before = threads.get_thread(account.id, "a@x.org")
    assert before.message_count == 2
    assert before.unread_count == 2
    assert before.latest_message_id == b.id
    assert before.subject == "Re: Plan"
    assert set(before.participants) == {"alice@example.com", "bob@example.com"}

    cache_repo.set_email_flags(a.id, is_read=True, is_starred=True)
    after_read = threads.get_thread(account.id, "a@x.org")
    assert after_read.unread_count == 1
    assert after_read.is_starred is True

    with db.transaction() as conn:
        cache_repo.move_email(b.id, archive.id, conn)
    inbox_view = threads.list_threads(inbox.id, 1, 50)
    assert inbox_view.total == 1
    assert inbox_view.items[0].message_count == 1
    assert threads.get_thread(account.id, "a@x.org").message_count == 2


def test_conversation_lists_members_oldest_first(account) -> None:
    inbox = make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")
    threads = ThreadReconstructor()
    add(threads, account.id, inbox.id, message_id="b@x.org", in_reply_to="a@x.org", minutes=5)
    add(threads, account.id, inbox.id, message_id="a@x.org", minutes=0)
    threads.reindex(account.id)

    members = threads.conversation(account.id, "a@x.org")

    assert [m.message_id for m in members] == ["a@x.org", "b@x.org"]
