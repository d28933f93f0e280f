"""Tests for NDJSON progress frames.

Frames are validated at the stream boundary: unknown or incomplete frames are
rejected rather than coerced into a partial event.
"""

import json

import pytest

from genbatch.models.batch import ItemStatus, MediaResult
from genbatch.models.events import (
    BatchCompleteEvent,
    BatchErrorEvent,
    ItemUpdateEvent,
    MalformedFrameError,
    encode_frame,
    parse_frame,
)


class TestEncodeFrame:
    def test_frame_is_one_json_line(self):
        frame = encode_frame(ItemUpdateEvent(index=3, status=ItemStatus.QUEUED))

        assert frame.endswith(b"\n")
        assert frame.count(b"\n") == 1
        assert json.loads(frame) == {"type": "item_update", "index": 3, "status": "queued"}

    def test_completed_frame_carries_result(self):
        event = ItemUpdateEvent(
            index=0,
            status=ItemStatus.COMPLETED,
            result=MediaResult(url="https://cdn.test/0.png"),
            request_id="req-1",
            duration_ms=1500,
        )

        data = json.loads(encode_frame(event))

        assert data["result"]["url"] == "https://cdn.test/0.png"
        assert data["request_id"] == "req-1"
        assert "error" not in data


class TestParseFrame:
    def test_parses_each_event_type(self):
        update = parse_frame(b'{"type":"item_update","index":1,"status":"processing"}\n')
        complete = parse_frame('{"type":"batch_complete","completed":4,"failed":1}')
        error = parse_frame('{"type":"batch_error","error":"KIE_API_KEY not configured"}')

        assert isinstance(update, ItemUpdateEvent)
        assert update.status == ItemStatus.PROCESSING
        assert isinstance(complete, BatchCompleteEvent)
        assert complete.completed == 4
        assert isinstance(error, BatchErrorEvent)

    def test_encoded_frame_parses_back(self):
        event = ItemUpdateEvent(index=2, status=ItemStatus.FAILED, error="rejected")

        assert parse_frame(encode_frame(event)) == event

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "   ",
            "not json",
            '{"type":"unknown_event"}',
            '{"index":1,"status":"queued"}',
            '{"type":"item_update","index":-1,"status":"queued"}',
            '{"type":"item_update","index":1,"status":"exploded"}',
            '{"type":"item_update","index":1,"status":"queued","extra":true}',
        ],
    )
    def test_rejects_malformed_frames(self, line):
        with pytest.raises(MalformedFrameError):
            parse_frame(line)

    def test_completed_update_requires_result(self):
        with pytest.raises(MalformedFrameError):
            parse_frame('{"type":"item_update","index":0,"status":"completed"}')

    def test_failed_update_requires_error(self):
        with pytest.raises(MalformedFrameError):
            parse_frame('{"type":"item_update","index":0,"status":"failed"}')
