"""Tests for completion-body inspection."""

from __future__ import annotations

import pytest

from signal_gateway.gateway.normalizer import (
    extract_citations,
    extract_message_text,
    is_well_formed_completion,
)


def _completion(content, **message_extra):
    return {"choices": [{"message": {"role": "assistant", "content": content, **message_extra}}]}


class TestWellFormed:
    def test_normal_completion(self):
        assert is_well_formed_completion(_completion("hello")) is True

    def test_tool_call_without_content(self):
        tool_call = {"id": "call_1", "type": "function", "function": {"name": "lookup", "arguments": "{}"}}
        assert is_well_formed_completion(_completion(None, tool_calls=[tool_call])) is True

    def test_refusal_without_content(self):
        assert is_well_formed_completion(_completion(None, refusal="I can't help with that.")) is True

    @pytest.mark.parametrize(
        "data",
        [
            None,
            "text",
            {},
            {"choices": []},
            {"choices": [{}]},
            {"choices": [{"message": None}]},
            _completion(""),
            _completion("   "),
            _completion(None),
            _completion(None, tool_calls=[]),
            {"error": {"message": "provider down", "code": 502}},
            {"error": {"message": "x"}, "choices": [{"message": {"content": "hi"}}]},
        ],
    )
    def test_malformed(self, data):
        assert is_well_formed_completion(data) is False


class TestExtractMessageText:
    def test_string_content(self):
        assert extract_message_text(_completion("hi there")) == "hi there"

    def test_content_parts(self):
        data = _completion([{"type": "text", "text": "a"}, {"type": "image_url"}, {"type": "text", "text": "b"}])
        assert extract_message_text(data) == "ab"

    def test_missing(self):
        assert extract_message_text({"choices": []}) == ""


class TestExtractCitations:
    def test_annotations_preferred(self):
        data = _completion(
            "See https://ignored.example.com",
            annotations=[
                {"type": "url_citation", "url_citation": {"url": "https://nfl.com/1999", "title": "1999"}},
                {"type": "url_citation", "url_citation": {"url": "https://nfl.com/1999"}},
                {"type": "file", "file": {}},
            ],
        )
        assert extract_citations(data) == ["https://nfl.com/1999"]

    def test_falls_back_to_text_urls(self):
        data = _completion("Sources: https://a.example.com/x, (https://b.example.com). Also https://a.example.com/x.")
        assert extract_citations(data) == ["https://a.example.com/x", "https://b.example.com"]

    def test_no_citations(self):
        assert extract_citations(_completion("no links")) == []
        assert extract_citations({}) == []
