import logging
LOGGER = logging.getLogger(__name__)

from datetime import datetime, timedelta
import pytest
from sellable.assist.messages import ChatMessage
from sellable.assist.threads import ThreadPosition
from sellable.utils.timestamps import (
    are_timestamps_equivalent,
    find_message_by_timestamp,
    is_timestamp_newer,
    to_epoch_seconds,
)

# Wednesday afternoon
NOW = datetime(2024, 1, 17, 15, 0)


class TestToEpochSeconds:

    @pytest.mark.parametrize("value,expected", [
        ("Mon 2:11 PM", datetime(2024, 1, 15, 14, 11)),
        ("Wed 9:00 AM", datetime(2024, 1, 17, 9, 0)),
        ("Fri 10:00 AM", datetime(2024, 1, 12, 10, 0)),
        ("lun 18:45", datetime(2024, 1, 15, 18, 45)),
        ("15/01/2024, 14:30", datetime(2024, 1, 15, 14, 30)),
        ("Yesterday at 10:05 PM", datetime(2024, 1, 16, 22, 5)),
        ("Ayer 10:05", datetime(2024, 1, 16, 10, 5)),
        ("Today 9:30 AM", datetime(2024, 1, 17, 9, 30)),
        ("Hoy 12:15", datetime(2024, 1, 17, 12, 15)),
        ("14:30", datetime(2024, 1, 17, 14, 30)),
        ("12:05 AM", datetime(2024, 1, 17, 0, 5)),
        ("5 minutes ago", NOW - timedelta(minutes=5)),
        ("2 hours ago", NOW - timedelta(hours=2)),
        ("Jan 5, 2023", datetime(2023, 1, 5)),
        ("Dec 24 6:30 PM", datetime(2024, 12, 24, 18, 30)),
        ("2024-01-15T10:00:00", datetime(2024, 1, 15, 10, 0)),
    ])
    def test_formats(self, value, expected):
        assert to_epoch_seconds(value, now=NOW) == expected.timestamp()

    def test_numbers(self):
        assert to_epoch_seconds(1705329000) == 1705329000.0
        assert to_epoch_seconds(1705329000123) == pytest.approx(1705329000.123)

    @pytest.mark.parametrize("value", [None, "", "   ", "not a time", True, ["Mon 2:11 PM"]])
    def test_unparseable(self, value):
        assert to_epoch_seconds(value, now=NOW) is None


class TestComparisons:

    def test_equivalent(self):
        assert are_timestamps_equivalent("Mon 2:11 PM", "Mon 2:11 PM")
        assert are_timestamps_equivalent(1000, 1050)
        assert not are_timestamps_equivalent(1000, 1100)
        assert are_timestamps_equivalent("Mon 2:11 PM", "15/01/2024, 14:11", now=NOW)
        assert not are_timestamps_equivalent(None, 1000)
        assert not are_timestamps_equivalent("garbage", 1000)

    def test_newer(self):
        assert is_timestamp_newer("Today 9:30 AM", "Yesterday 9:30 AM", now=NOW)
        assert not is_timestamp_newer("Yesterday 9:30 AM", "Today 9:30 AM", now=NOW)
        assert not is_timestamp_newer(None, 1000)


class TestFindMessageByTimestamp:

    @pytest.fixture
    def messages(self):
        return [
            ChatMessage(id="m_1", text="hi", timestamp="Today 10:00 AM"),
            ChatMessage(id="m_2", text="still there?", timestamp="Today 10:20 AM"),
            ChatMessage(id="m_3", text="yes", timestamp=None),
            ChatMessage(id="m_4", text="great", timestamp="Today 11:00 AM"),
        ]

    def test_exact_id_and_content(self, messages):
        position = ThreadPosition(message_id="m_3", content="yes", timestamp="Today 1:00 PM")
        assert find_message_by_timestamp(messages, position, now=NOW) == 2

    def test_nearest_within_tolerance(self, messages):
        position = ThreadPosition(message_id="gone", content="edited", timestamp="Today 10:25 AM")
        assert find_message_by_timestamp(messages, position, now=NOW) == 1

    def test_nothing_close_enough(self, messages):
        position = ThreadPosition(message_id="gone", content="edited", timestamp="Today 2:00 PM")
        assert find_message_by_timestamp(messages, position, now=NOW) == -1

    def test_no_timestamp(self, messages):
        assert find_message_by_timestamp(messages, ThreadPosition(message_id="m_1", content="hi")) == -1
        assert find_message_by_timestamp([], ThreadPosition(timestamp=1000)) == -1
