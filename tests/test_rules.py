from __future__ import annotations

import pytest

from mail_engine.core.rules import RuleEvaluator, condition_matches, rule_matches
from mail_engine.models import EmailAddress, EmailMessage, Label, Rule, RuleAction, RuleCondition
from mail_engine.storage import cache_repo
from mail_engine.utils.errors import RuleNotFoundError
from tests.fakes import make_folder, store_message


def add_rule(account_id: int, priority: int, conditions, actions, **fields) -> Rule:
    return cache_repo.insert_rule(Rule(
        account_id=account_id,
        name=fields.pop("name", f"rule {priority}"),
        priority=priority,
        conditions=conditions,
        actions=actions,
        **fields,
    ))


def sample_message() -> EmailMessage:
    return EmailMessage(
        from_name="Alice Example",
        from_address="alice@example.com",
        to_addresses=[EmailAddress("User", "user@example.com")],
        cc_addresses=[EmailAddress("", "team@example.com")],
        subject="Invoice #42 for March",
        text_body="Please pay by Friday",
    )


@pytest.fixture
def inbox(account):
    return make_folder(account.id, "Inbox", folder_type="inbox", remote_name="INBOX")


def test_operators_are_case_insensitive() -> None:
    message = sample_message()

    assert condition_matches(RuleCondition("subject", "contains", "INVOICE"), message)
    assert condition_matches(RuleCondition("subject", "startswith", "invoice #42"), message)
    assert condition_matches(RuleCondition("subject", "endswith", "MARCH"), message)
    assert condition_matches(RuleCondition("subject", "equals", "invoice #42 for march"), message)
    assert condition_matches(RuleCondition("subject", "regex", r"^invoice #\d+"), message)
    assert condition_matches(RuleCondition("body", "contains", "FRIDAY"), message)
    assert not condition_matches(RuleCondition("subject", "contains", "receipt"), message)


def test_address_fields_match_address_name_or_both() -> None:
    message = sample_message()

    assert condition_matches(RuleCondition("from", "equals", "alice@example.com"), message)
    assert condition_matches(RuleCondition("from", "equals", "alice example"), message)
    assert condition_matches(RuleCondition("from", "contains", "Alice Example <alice@"), message)
    assert condition_matches(RuleCondition("to", "endswith", "@example.com"), message)
    assert condition_matches(RuleCondition("cc", "equals", "team@example.com"), message)
    assert not condition_matches(RuleCondition("cc", "equals", "user@example.com"), message)


def test_body_falls_back_to_html() -> None:
    message = EmailMessage(html_body="<p>Your <b>order</b> shipped</p>")

    assert condition_matches(RuleCondition("body", "contains", "order"), message)
    assert not condition_matches(RuleCondition("body", "contains", "<b>"), message)


def test_invalid_or_oversized_regex_never_matches() -> None:
    message = sample_message()

    assert not condition_matches(RuleCondition("subject", "regex", "(unclosed"), message)
    assert not condition_matches(RuleCondition("subject", "regex", "a" * 600), message)


def test_match_all_and_any() -> None:
    message = sample_message()
    hit = RuleCondition("subject", "contains", "invoice")
    miss = RuleCondition("from", "contains", "bob")

    assert rule_matches(Rule(match_type="all", conditions=[hit, hit]), message)
    assert not rule_matches(Rule(match_type="all", conditions=[hit, miss]), message)
    assert rule_matches(Rule(match_type="any", conditions=[miss, hit]), message)
    assert not rule_matches(Rule(match_type="any", conditions=[miss]), message)


def test_rule_without_conditions_never_matches() -> None:
    assert not rule_matches(Rule(match_type="all", conditions=[]), sample_message())
    assert not rule_matches(Rule(match_type="any", conditions=[]), sample_message())


def test_stop_processing_prevents_later_delete(account, inbox) -> None:
    invoice = [RuleCondition("subject", "contains", "invoice")]
    add_rule(account.id, 1, invoice, [RuleAction("star")], stop_processing=True)
    add_rule(account.id, 2, invoice, [RuleAction("delete")])
    message = store_message(account.id, inbox.id, subject="Invoice #42")

    applied = RuleEvaluator().apply_rules(account.id, message)

    stored = cache_repo.get_email(message.id)
    assert stored is not None
    assert stored.is_starred is True
    assert [a.action.type for a in applied] == ["star"]


def test_rules_run_in_priority_order_and_last_move_wins(account, inbox) -> None:
    first = make_folder(account.id, "First")
    second = make_folder(account.id, "Second", sort_order=1)
    everything = [RuleCondition("from", "contains", "@")]
    add_rule(account.id, 5, everything, [RuleAction("move", str(second.id))])
    add_rule(account.id, 1, everything, [RuleAction("move", str(first.id))])
    message = store_message(account.id, inbox.id, uid=3)

    RuleEvaluator().apply_rules(account.id, message)

    stored = cache_repo.get_email(message.id)
    assert stored.folder_id == second.id
    assert stored.uid is None


def test_label_and_mark_read_actions(account, inbox) -> None:
    label = cache_repo.insert_label(Label(account_id=account.id, name="Finance"))
    add_rule(account.id, 1, [RuleCondition("subject", "contains", "invoice")],
             [RuleAction("label", str(label.id)), RuleAction("mark_read")])
    message = store_message(account.id, inbox.id, subject="Invoice")

    RuleEvaluator().apply_rules(account.id, message)

    assert [l.name for l in cache_repo.list_email_labels(message.id)] == ["Finance"]
    assert cache_repo.get_email(message.id).is_read is True


def test_failing_action_is_skipped_and_others_still_apply(account, inbox) -> None:
    add_rule(account.id, 1, [RuleCondition("subject", "contains", "invoice")],
             [RuleAction("archive"), RuleAction("label", "9999"), RuleAction("star")])
    message = store_message(account.id, inbox.id, subject="Invoice")

    applied = RuleEvaluator().apply_rules(account.id, message)

    stored = cache_repo.get_email(message.id)
    assert stored.folder_id == inbox.id
    assert stored.is_starred is True
    assert [a.action.type for a in applied] == ["star"]


def test_archive_moves_to_archive_folder(account, inbox) -> None:
    archive = make_folder(account.id, "Archive", folder_type="archive", remote_name="Archive")
    add_rule(account.id, 1, [RuleCondition("from", "equals", "alice@example.com")],
             [RuleAction("archive")])
    message = store_message(account.id, inbox.id)

    RuleEvaluator().apply_rules(account.id, message)

    assert cache_repo.get_email(message.id).folder_id == archive.id


def test_delete_ends_rule_processing(account, inbox) -> None:
    everything = [RuleCondition("from", "contains", "@")]
    add_rule(account.id, 1, everything, [RuleAction("delete"), RuleAction("star")])
    add_rule(account.id, 2, everything, [RuleAction("mark_read")])
    message = store_message(account.id, inbox.id)

    applied = RuleEvaluator().apply_rules(account.id, message)

    assert cache_repo.get_email(message.id) is None
    assert [a.action.type for a in applied] == ["delete"]


def test_disabled_rules_are_skipped(account, inbox) -> None:
    add_rule(account.id, 1, [RuleCondition("from", "contains", "@")], [RuleAction("star")],
             enabled=False)
    message = store_message(account.id, inbox.id)

    assert RuleEvaluator().apply_rules(account.id, message) == []
    assert cache_repo.get_email(message.id).is_starred is False


def test_run_now_applies_to_existing_messages(account, inbox) -> None:
    rule = add_rule(account.id, 1, [RuleCondition("subject", "contains", "report")],
                    [RuleAction("star")], enabled=False)
    store_message(account.id, inbox.id, message_id="r1@x.org", subject="Weekly report")
    store_message(account.id, inbox.id, message_id="r2@x.org", subject="Monthly REPORT")
    store_message(account.id, inbox.id, message_id="other@x.org", subject="Lunch")

    count = RuleEvaluator().run_now(rule.id)

    assert count == 2
    starred = {m.message_id for m in cache_repo.list_account_emails(account.id) if m.is_starred}
    assert starred == {"r1@x.org", "r2@x.org"}


def test_run_now_unknown_rule() -> None:
    with pytest.raises(RuleNotFoundError):
        RuleEvaluator().run_now(12345)
