from __future__ import annotations

import allure
import pytest

from agent_dispatch.dispatch.models import ZERO_ID, RecordId, partition_key_for
from agent_dispatch.errors import InvalidRecordId

pytestmark = [
    allure.epic("Message Log"),
    allure.feature("Record Identity"),
]


def test_parse_accepts_full_and_short_forms() -> None:
    assert RecordId.parse("5-0") == RecordId(5, 0)
    assert RecordId.parse("1700000000000-42") == RecordId(1_700_000_000_000, 42)
    assert RecordId.parse("0") == ZERO_ID
    assert str(RecordId(12, 3)) == "12-3"


@pytest.mark.parametrize("value", ["", "abc", "1-", "-1", "1-2-3", "$"])
def test_parse_rejects_malformed_ids(value: str) -> None:
    with pytest.raises(InvalidRecordId):
        RecordId.parse(value)


def test_ids_order_by_milliseconds_then_sequence() -> None:
    ids = [RecordId(2, 0), RecordId(1, 5), RecordId(1, 0), RecordId(10, 0)]
    assert sorted(ids) == [RecordId(1, 0), RecordId(1, 5), RecordId(2, 0), RecordId(10, 0)]


def test_next_after_never_goes_backwards() -> None:
    assert ZERO_ID.next_after(1) == RecordId(1, 0)
    assert RecordId(1, 0).next_after(1) == RecordId(1, 1)
    # Clock moved backwards: stay on the last millisecond and bump the sequence.
    assert RecordId(9, 4).next_after(3) == RecordId(9, 5)


def test_partition_key_prefix() -> None:
    assert partition_key_for("drift-scan") == "dispatch:drift-scan"
