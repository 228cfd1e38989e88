from datetime import date, datetime, timezone

from ledger_api.core.payloads import (
    as_number,
    as_of_instant,
    canonical_json,
    content_hash,
    flatten_payload,
    get_path,
    parse_timestamp,
    values_equal,
)


def test_content_hash_ignores_key_order() -> None:
    left = {"salary": {"gross_monthly": 2000, "currency": "EUR"}, "name": "Anna"}
    right = {"name": "Anna", "salary": {"currency": "EUR", "gross_monthly": 2000}}

    assert canonical_json(left) == canonical_json(right)
    assert content_hash(left) == content_hash(right)
    assert content_hash(left) != content_hash({**left, "name": "Anne"})


def test_flatten_payload_recurses_into_dicts_and_lists_of_objects() -> None:
    payload = {
        "salary": {"gross_monthly": 2000},
        "contracts": [{"start_date": "2023-01-01"}, {"start_date": "2024-01-01"}],
        "tags": ["a", "b"],
        "extra": {},
    }

    assert flatten_payload(payload) == {
        "salary.gross_monthly": 2000,
        "contracts.0.start_date": "2023-01-01",
        "contracts.1.start_date": "2024-01-01",
        "tags": ["a", "b"],
        "extra": {},
    }


def test_get_path_distinguishes_missing_from_null() -> None:
    payload = {"hours": {"per_week": None}, "contracts": [{"type": "fixed"}]}

    assert get_path(payload, "hours.per_week") == (True, None)
    assert get_path(payload, "hours.per_day") == (False, None)
    assert get_path(payload, "contracts.0.type") == (True, "fixed")
    assert get_path(payload, "contracts.3.type") == (False, None)


def test_values_equal_applies_numeric_tolerance() -> None:
    assert values_equal(2000, 2000.004)
    assert not values_equal(2000, 2000.5)
    assert not values_equal(None, 0)
    assert values_equal({"a": 1}, {"a": 1})


def test_as_number_accepts_decimal_comma() -> None:
    assert as_number("2100,50") == 2100.5
    assert as_number(True) is None
    assert as_number("n/a") is None


def test_parse_timestamp_treats_provider_sentinel_as_null() -> None:
    assert parse_timestamp("0001-01-01T00:00:00") is None
    assert parse_timestamp("2024-03-01T10:00:00Z") == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp(date(2024, 3, 1)) == datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert parse_timestamp("not a date") is None


def test_bare_date_query_covers_the_whole_day() -> None:
    instant = as_of_instant(date(2024, 2, 1))

    assert instant.date() == date(2024, 2, 1)
    assert instant.hour == 23
    assert instant.tzinfo == timezone.utc
