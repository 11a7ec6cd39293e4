import asyncio
import json

from feature_workflow.events import EventKind, EventStreamDecoder, classify_record, iter_events


def _line(record: dict) -> bytes:
    return (json.dumps(record) + "\n").encode("utf-8")


ASSISTANT = {
    "type": "assistant",
    "message": {
        "content": [
            {"type": "text", "text": "Reading the plan"},
            {"type": "tool_use", "name": "Read", "input": {"file_path": "plan.md"}},
        ]
    },
}
TOOL_RESULT = {"type": "user", "message": {"content": [{"type": "tool_result", "content": "file body"}]}}
SUMMARY = {"type": "result", "subtype": "success", "result": "All done", "num_turns": 3}


def test_records_split_across_chunks_decode_once() -> None:
    payload = _line(ASSISTANT) + _line(TOOL_RESULT) + _line(SUMMARY)
    decoder = EventStreamDecoder()
    events = []
    for start in range(0, len(payload), 7):
        events.extend(decoder.feed(payload[start : start + 7]))
    events.extend(decoder.close())

    assert [event.kind for event in events] == [
        EventKind.ASSISTANT_TEXT,
        EventKind.TOOL_INVOCATION,
        EventKind.TOOL_RESULT,
        EventKind.RUN_SUMMARY,
    ]
    assert events[1].tool_name == "Read"
    assert events[2].text == "file body"
    assert events[3].payload["num_turns"] == 3
    assert decoder.final_text == "Reading the plan"


def test_multibyte_characters_split_between_chunks() -> None:
    raw = json.dumps({"type": "assistant", "message": {"content": "café ✓"}}, ensure_ascii=False).encode("utf-8") + b"\n"
    decoder = EventStreamDecoder()
    events = []
    for index in range(len(raw)):
        events.extend(decoder.feed(raw[index : index + 1]))
    assert [event.text for event in events] == ["café ✓"]


def test_noise_lines_are_dropped_and_counted() -> None:
    decoder = EventStreamDecoder()
    events = decoder.feed(b"warming up...\n[1, 2]\n" + _line({"type": "mystery"}) + _line(SUMMARY))
    assert [event.kind for event in events] == [EventKind.RUN_SUMMARY]
    assert decoder.noise_count == 3
    assert decoder.final_text == "All done"


def test_close_flushes_unterminated_last_line() -> None:
    decoder = EventStreamDecoder()
    assert decoder.feed(json.dumps(SUMMARY).encode("utf-8")) == []
    events = decoder.close()
    assert [event.kind for event in events] == [EventKind.RUN_SUMMARY]


def test_last_assistant_text_wins_over_summary() -> None:
    decoder = EventStreamDecoder()
    decoder.feed(_line({"type": "assistant", "message": {"content": "first"}}))
    decoder.feed(_line({"type": "assistant", "message": {"content": "second"}}))
    decoder.feed(_line(SUMMARY))
    assert decoder.final_text == "second"


def test_classify_top_level_tool_records() -> None:
    invocation = classify_record({"type": "tool_use", "name": "Bash", "input": {"command": "ls"}})
    result = classify_record({"type": "tool_result", "content": [{"type": "text", "text": "ok"}], "is_error": True})
    assert invocation[0].tool_name == "Bash"
    assert result[0].text == "ok"
    assert result[0].payload == {"is_error": True}


def test_iter_events_reads_until_eof() -> None:
    class FakeStream:
        def __init__(self, data: bytes) -> None:
            self.data = data

        async def read(self, n: int = -1) -> bytes:
            chunk, self.data = self.data[:5], self.data[5:]
            return chunk

    async def collect() -> list:
        return [event async for event in iter_events(FakeStream(_line(ASSISTANT) + json.dumps(SUMMARY).encode()))]

    events = asyncio.run(collect())
    assert [event.kind for event in events][-1] is EventKind.RUN_SUMMARY
    assert len(events) == 3
