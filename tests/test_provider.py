"""
Tests for the provider client and inbox response normalization.

Tests cover:
- The three response shapes (messages key, data key, bare array)
- Field aliases for body, sender and time
- Unknown shapes and junk entries
- Request construction (token path, digits-only phone number)
- Error mapping to ProviderError
- Outbound send form fields
"""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from msgsync.provider import (
    ProviderClient,
    ProviderError,
    UNKNOWN_SENDER,
    extract_messages,
    normalize_page,
)
from msgsync.utils import digits_only, format_ts, mask_token, parse_ts

from conftest import FakeProvider, TEST_PHONE, TEST_TOKEN


NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

RAW_MESSAGES = [
    {"sender": "09121234567", "message": "hi", "time": "2025-01-15T10:00:00Z"},
    {"from": "09127654321", "text": "salam", "timestamp": "2025-01-15 10:05:00"},
    {"phone": "+989120000000", "body": "order #12", "date": 1736935800},
]


class TestExtractMessages:
    """Test locating the message array in a response."""

    def test_three_shapes_give_identical_records(self):
        """messages key, data key and bare array normalize the same way."""
        shapes = [
            {"messages": RAW_MESSAGES},
            {"data": RAW_MESSAGES, "page": 1},
            RAW_MESSAGES,
        ]
        results = [normalize_page(shape, now=NOW) for shape in shapes]

        assert len(results[0]) == 3
        assert results[0] == results[1] == results[2]

    def test_messages_key_preferred_over_data(self):
        payload = {"messages": [{"message": "a"}], "data": [{"message": "b"}]}
        assert extract_messages(payload) == [{"message": "a"}]

    def test_non_list_value_falls_through(self):
        payload = {"messages": "none", "data": [{"message": "b"}]}
        assert extract_messages(payload) == [{"message": "b"}]

    @pytest.mark.parametrize("payload", [
        {"status": "ok"},
        {"messages": None},
        "unexpected",
        42,
        None,
    ])
    def test_unknown_shape_yields_no_records(self, payload):
        assert normalize_page(payload, now=NOW) == []


class TestNormalizeMessage:
    """Test field alias handling."""

    def test_aliases(self):
        records = normalize_page(RAW_MESSAGES, now=NOW)

        assert [r.sender for r in records] == ["09121234567", "09127654321", "+989120000000"]
        assert [r.body for r in records] == ["hi", "salam", "order #12"]
        assert records[0].time == datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        assert records[1].time == datetime(2025, 1, 15, 10, 5, 0, tzinfo=timezone.utc)
        assert records[2].time == datetime(2025, 1, 15, 10, 10, 0, tzinfo=timezone.utc)

    def test_missing_fields_get_defaults(self):
        records = normalize_page([{}], now=NOW)

        assert len(records) == 1
        assert records[0].sender == UNKNOWN_SENDER
        assert records[0].body == ""
        assert records[0].time == NOW

    def test_unparseable_time_falls_back_to_now(self):
        records = normalize_page([{"message": "x", "time": "yesterday-ish"}], now=NOW)
        assert records[0].time == NOW

    def test_empty_first_alias_uses_next(self):
        records = normalize_page([{"message": "", "text": "fallback", "sender": "", "from": "0912"}], now=NOW)
        assert records[0].body == "fallback"
        assert records[0].sender == "0912"

    def test_non_object_entries_skipped(self):
        records = normalize_page(["hello", None, {"message": "ok"}], now=NOW)
        assert [r.body for r in records] == ["ok"]

    def test_numeric_sender_stringified(self):
        records = normalize_page([{"message": "x", "sender": 9121234567}], now=NOW)
        assert records[0].sender == "9121234567"


class TestTimestamps:
    """Test timestamp helpers."""

    def test_epoch_milliseconds(self):
        assert parse_ts(1736935800000) == datetime(2025, 1, 15, 10, 10, 0, tzinfo=timezone.utc)

    def test_numeric_string(self):
        assert parse_ts("1736935800") == datetime(2025, 1, 15, 10, 10, 0, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self):
        assert parse_ts("2025-01-15T13:30:00+03:30") == datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def test_format_is_fixed_width(self):
        assert format_ts(datetime(2025, 1, 5, 3, 4, 5)) == "2025-01-05T03:04:05Z"

    @pytest.mark.parametrize("value", [None, "", True, [], "not a date"])
    def test_unparseable(self, value):
        assert parse_ts(value) is None


class TestHelpers:

    def test_digits_only(self):
        assert digits_only("+98 (912) 000-1111") == "989120001111"

    def test_mask_token(self):
        assert mask_token("abcdef123456") == "********3456"
        assert mask_token("abc") == "***"
        assert mask_token(None) is None


class TestProviderClient:
    """Test HTTP requests made to the provider."""

    def test_fetch_builds_request(self):
        fake = FakeProvider(pages={2: {"messages": RAW_MESSAGES}})

        async def scenario():
            async with fake.client() as client:
                return await client.fetch_received_page(TEST_TOKEN, TEST_PHONE, page=2)

        records = asyncio.run(scenario())

        assert len(records) == 3
        request = fake.requests[0]
        assert request.method == "GET"
        assert request.url.path == f"/receivedMessages/{TEST_TOKEN}"
        assert request.url.params["page"] == "2"
        assert request.url.params["phonenumber"] == "989120001111"

    def test_error_status_raises(self):
        fake = FakeProvider(fail_pages=[1])

        async def scenario():
            async with fake.client() as client:
                await client.fetch_received(TEST_TOKEN, TEST_PHONE)

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.status_code == 500

    def test_invalid_json_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))

        async def scenario():
            async with ProviderClient(base_url="https://provider.test", transport=transport) as client:
                await client.fetch_received(TEST_TOKEN, TEST_PHONE)

        with pytest.raises(ProviderError):
            asyncio.run(scenario())

    def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            transport = httpx.MockTransport(handler)
            async with ProviderClient(base_url="https://provider.test", transport=transport) as client:
                await client.fetch_received(TEST_TOKEN, TEST_PHONE)

        with pytest.raises(ProviderError):
            asyncio.run(scenario())

    def test_send_posts_form_fields(self):
        fake = FakeProvider()

        async def scenario():
            async with fake.client() as client:
                await client.send_message(TEST_TOKEN, "09121234567", "hello", link="https://x.test/a.jpg")
                await client.send_message(TEST_TOKEN, "09121234567", "no link")

        asyncio.run(scenario())

        assert fake.requests[0].url.path == f"/sendMsg/{TEST_TOKEN}"
        assert fake.sent[0] == {
            "phonenumber": "09121234567",
            "message": "hello",
            "link": "https://x.test/a.jpg",
        }
        assert "link" not in fake.sent[1]

    def test_send_rejected_raises(self):
        fake = FakeProvider(send_status=401)

        async def scenario():
            async with fake.client() as client:
                await client.send_message(TEST_TOKEN, "0912", "hello")

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(scenario())
        assert exc_info.value.status_code == 401
