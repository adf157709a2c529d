"""Incremental decoding of line-delimited and sentinel-delimited streams."""

from __future__ import annotations

import json

import pytest

from remotectl.engine.errors import ProtocolDecodeError
from remotectl.engine.stream_parser import (
    PLAN_SPEC,
    QUESTION_SPEC,
    LineDelimitedParser,
    SentinelParser,
    decode_json_object,
)


STREAM = (
    b'{"type":"system","subtype":"init","session_id":"abc"}\n'
    b"some log line that is not json\n"
    b'{"type":"assistant","message":{"content":[{"type":"text","text":"caf\xc3\xa9"}]}}\n'
    b"\n"
    b'{"type":"result","total_cost_usd":0.42}'
)


def _feed_all(parser, chunks):
    records = []
    for chunk in chunks:
        records.extend(parser.feed(chunk))
    records.extend(parser.flush())
    return records


def _split(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


# ── decode_json_object ──


def test_decode_json_object_rejects_non_objects():
    assert decode_json_object('{"a": 1}') == {"a": 1}
    with pytest.raises(ProtocolDecodeError):
        decode_json_object("[1, 2]")
    with pytest.raises(ProtocolDecodeError):
        decode_json_object("{not json")


# ── LineDelimitedParser ──


def test_line_parser_one_byte_chunks_match_single_chunk():
    whole = _feed_all(LineDelimitedParser(), [STREAM])
    bytewise = _feed_all(LineDelimitedParser(), _split(STREAM, 1))
    assert whole == bytewise
    assert [r["type"] for r in whole] == ["system", "assistant", "result"]
    assert whole[1]["message"]["content"][0]["text"] == "café"


@pytest.mark.parametrize("size", [2, 3, 7, 64])
def test_line_parser_arbitrary_chunk_sizes(size):
    expected = _feed_all(LineDelimitedParser(), [STREAM])
    assert _feed_all(LineDelimitedParser(), _split(STREAM, size)) == expected


def test_line_parser_keeps_partial_line_until_newline():
    parser = LineDelimitedParser()
    assert parser.feed('{"type":"res') == []
    assert parser.buffer == '{"type":"res'
    assert parser.feed('ult"}\n{"x"') == [{"type": "result"}]
    assert parser.buffer == '{"x"'


def test_line_parser_counts_skipped_noise():
    parser = LineDelimitedParser()
    parser.feed("warning: something\n[1,2]\n{}\n")
    assert parser.skipped == 2


def test_line_parser_flush_swallows_partial_record():
    parser = LineDelimitedParser()
    parser.feed('{"type":"result"')
    assert parser.flush() == []
    assert parser.buffer == ""


# ── SentinelParser ──


QUESTION_STREAM = (
    "Exploring the codebase...\n"
    "===QUESTION===\n"
    '{"id":"q1","question":"REST or GraphQL?"}\n'
    "===END_QUESTION===\n"
    "Waiting for input\n"
)


def test_sentinel_three_chunks_yield_one_question():
    a, b = 20, 47
    chunks = [QUESTION_STREAM[:a], QUESTION_STREAM[a:b], QUESTION_STREAM[b:]]
    parser = SentinelParser()
    records = []
    for chunk in chunks:
        records.extend(parser.feed(chunk))

    assert len(records) == 1
    assert records[0].kind == "question"
    assert records[0].payload["id"] == "q1"
    assert QUESTION_SPEC.start not in parser.buffer
    assert QUESTION_SPEC.end not in parser.buffer
    assert "q1" not in parser.buffer


@pytest.mark.parametrize("offsets", [(1, 2), (14, 15), (30, 60), (70, 90)])
def test_sentinel_split_offsets_do_not_matter(offsets):
    a, b = offsets
    parser = SentinelParser()
    records = []
    for chunk in (QUESTION_STREAM[:a], QUESTION_STREAM[a:b], QUESTION_STREAM[b:]):
        records.extend(parser.feed(chunk))
    assert [r.payload["id"] for r in records] == ["q1"]


NESTED_STREAM = (
    "===PLAN_START===\n"
    "===QUESTION===\n"
    '{"id":"q1","question":"a?"}\n'
    "===END_QUESTION===\n"
    '{"summary":"s","issues":[]}\n'
    "===PLAN_END===\n"
)
SEQUENTIAL_STREAM = QUESTION_STREAM + (
    "===PLAN_START===\n"
    '{"summary":"Build it","issues":[]}\n'
    "===PLAN_END===\n"
)


@pytest.mark.parametrize("text", [SEQUENTIAL_STREAM, NESTED_STREAM], ids=["sequential", "nested"])
def test_sentinel_one_byte_chunks_match_single_chunk(text):
    data = text.encode()
    whole = SentinelParser().feed(data)
    parser = SentinelParser()
    bytewise = []
    for chunk in _split(data, 1):
        bytewise.extend(parser.feed(chunk))
    assert whole == bytewise
    assert [r.kind for r in whole] == ["question", "plan"]


def test_sentinel_nested_question_is_removed_from_plan_body():
    parser = SentinelParser()
    records = parser.feed(NESTED_STREAM)
    assert records[0].payload["id"] == "q1"
    assert records[1].payload == {"summary": "s", "issues": []}


def test_sentinel_holds_second_question_until_resolved():
    parser = SentinelParser()
    first = parser.feed(
        '===QUESTION===\n{"id":"q1","question":"a?"}\n===END_QUESTION===\n'
        '===QUESTION===\n{"id":"q2","question":"b?"}\n===END_QUESTION===\n'
    )
    assert [r.payload["id"] for r in first] == ["q1"]
    assert parser.is_outstanding("question")

    released = parser.resolve("question")
    assert [r.payload["id"] for r in released] == ["q2"]
    assert parser.is_outstanding("question")


def test_sentinel_plan_is_not_blocked_by_outstanding_question():
    parser = SentinelParser([QUESTION_SPEC, PLAN_SPEC])
    parser.feed('===QUESTION===\n{"id":"q1","question":"a?"}\n===END_QUESTION===\n')
    records = parser.feed('===PLAN_START===\n{"summary":"s","issues":[]}\n===PLAN_END===\n')
    assert [r.kind for r in records] == ["plan"]


def test_sentinel_discards_malformed_block_and_continues():
    parser = SentinelParser()
    records = parser.feed(
        "===QUESTION=== before and a line ===END_QUESTION===\n"
        '===QUESTION===\n{"id":"q1","question":"ok?"}\n===END_QUESTION===\n'
    )
    assert [r.payload["id"] for r in records] == ["q1"]


def test_sentinel_buffer_is_trimmed_without_pending_marker():
    parser = SentinelParser()
    parser.feed("x" * 10_000)
    assert len(parser.buffer) < len(PLAN_SPEC.start)


def test_sentinel_buffer_keeps_marker_prefix_across_chunks():
    parser = SentinelParser()
    parser.feed("noise ===QUES")
    records = parser.feed('TION===\n{"id":"q9","question":"?"}\n===END_QUESTION===')
    assert [r.payload["id"] for r in records] == ["q9"]


def test_sentinel_max_buffer_drops_unterminated_record():
    parser = SentinelParser(max_buffer=100)
    parser.feed("===PLAN_START===\n" + "y" * 500)
    assert len(parser.buffer) <= 100
    assert PLAN_SPEC.start not in parser.buffer


def test_sentinel_flush_decodes_unterminated_record():
    parser = SentinelParser()
    parser.feed("===PLAN_START===\n" + json.dumps({"summary": "s", "issues": []}))
    records = parser.flush()
    assert [r.kind for r in records] == ["plan"]
    assert parser.buffer == ""


def test_sentinel_flush_swallows_partial_json():
    parser = SentinelParser()
    parser.feed('===PLAN_START===\n{"summary": "s", "iss')
    assert parser.flush() == []


def test_sentinel_flush_respects_outstanding_question():
    parser = SentinelParser()
    first = parser.feed(
        '===QUESTION===\n{"id":"q1","question":"a?"}\n===END_QUESTION===\n'
        '===QUESTION===\n{"id":"q2","question":"b?"}\n'
    )
    assert [r.payload["id"] for r in first] == ["q1"]
    assert parser.flush() == []
