from __future__ import annotations

from mail_engine.core.search import parse_query


def test_flag_operators_become_conditions() -> None:
    parsed = parse_query("is:starred has:attachment is:unread")

    assert parsed.conditions == ["e.is_starred = 1", "e.has_attachments = 1", "e.is_read = 0"]
    assert parsed.words == []


def test_values_are_lowercased_and_like_escaped() -> None:
    parsed = parse_query('from:Alice subject:"50% OFF_now"')

    assert parsed.params == ["%alice%", "%alice%", "%50\\% off\\_now%"]
    assert parsed.words == []


def test_dates_bound_by_whole_days() -> None:
    parsed = parse_query("after:2024-03-01 before:2024-03-10")

    assert parsed.conditions == ["e.date >= ?", "e.date < ?"]
    assert parsed.params == ["2024-03-02T00:00:00+00:00", "2024-03-10T00:00:00+00:00"]


def test_unknown_operators_and_bad_dates() -> None:
    parsed = parse_query("in:inbox before:yesterday hello")

    assert parsed.words == ["in:inbox", "hello"]
    assert parsed.conditions == []


def test_empty_query() -> None:
    parsed = parse_query("")

    assert parsed.conditions == parsed.params == parsed.words == []
