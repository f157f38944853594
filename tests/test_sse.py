"""Tests for the incremental SSE delta parser."""

from app.utils.sse import SSEDeltaParser, format_delta_event, format_done_event


def _stream(*fragments: str) -> bytes:
    return b"".join(format_delta_event(f) for f in fragments) + format_done_event()


class TestSSEDeltaParser:
    def test_concatenation_matches_fragments(self):
        parser = SSEDeltaParser()
        out = parser.feed(_stream("Hola", ", ", "¿cómo", " estás?"))
        assert "".join(out) == "Hola, ¿cómo estás?"
        assert parser.done is True

    def test_chunks_split_mid_line_and_mid_codepoint(self):
        raw = _stream("análisis ", "de ", "sangre")
        parser = SSEDeltaParser()
        fragments = []
        for i in range(0, len(raw), 7):
            fragments.extend(parser.feed(raw[i : i + 7]))
        fragments.extend(parser.close())
        assert "".join(fragments) == "análisis de sangre"

    def test_input_after_done_is_ignored(self):
        parser = SSEDeltaParser()
        parser.feed(_stream("one"))
        assert parser.feed(format_delta_event("two")) == []
        assert parser.close() == []

    def test_comments_and_blank_lines_are_skipped(self):
        parser = SSEDeltaParser()
        raw = b": keep-alive\n\n" + format_delta_event("x") + b"event: ping\n\n"
        assert parser.feed(raw) == ["x"]

    def test_events_without_content_yield_nothing(self):
        parser = SSEDeltaParser()
        raw = b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        assert parser.feed(raw) == []

    def test_stream_closed_without_done_is_flushed(self):
        parser = SSEDeltaParser()
        raw = format_delta_event("tail").rstrip(b"\n")
        assert parser.feed(raw) == []
        assert parser.close() == ["tail"]

    def test_malformed_line_is_skipped_once_followed_by_more(self, caplog):
        parser = SSEDeltaParser()
        raw = b"data: {not json\n" + format_delta_event("ok")
        with caplog.at_level("WARNING", logger="app.utils.sse"):
            assert parser.feed(raw) == ["ok"]
        assert caplog.messages == ["Skipping malformed SSE line: '{not json'"]
