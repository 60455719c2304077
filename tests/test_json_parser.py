"""Tests for JSON extraction from model output."""

import pytest

from taletree.core.exceptions import GenerationError, ParseError
from taletree.pipeline.json_parser import (
    _clean_json_text,
    _extract_json_object,
    _strip_markdown_fences,
    parse_json_object,
)
from tests.fakes import chapter_json


class TestStripMarkdownFences:
    def test_strips_json_fence(self):
        text = '```json\n{"key": "value"}\n```'
        assert _strip_markdown_fences(text) == '{"key": "value"}'

    def test_strips_plain_fence(self):
        text = '```\n{"key": "value"}\n```'
        assert _strip_markdown_fences(text) == '{"key": "value"}'

    def test_handles_no_fence(self):
        text = '{"key": "value"}'
        assert _strip_markdown_fences(text) == text

    def test_fence_inside_prose(self):
        text = 'Here is the chapter:\n```json\n{"key": "value"}\n```\nEnjoy!'
        assert _strip_markdown_fences(text) == '{"key": "value"}'


class TestCleanJsonText:
    def test_removes_trailing_commas(self):
        assert _clean_json_text('{"a": [1, 2,],}') == '{"a": [1, 2]}'

    def test_drops_lines_around_object(self):
        text = 'Sure!\n{"a": 1}\nHope that helps'
        assert _clean_json_text(text) == '{"a": 1}'


class TestExtractJsonObject:
    def test_first_top_level_object(self):
        text = 'prefix {"a": {"b": 1}} middle {"c": 2}'
        assert _extract_json_object(text) == '{"a": {"b": 1}}'

    def test_braces_inside_strings_are_ignored(self):
        text = 'x {"content": "she drew a } and a {", "n": 1} y'
        assert _extract_json_object(text) == '{"content": "she drew a } and a {", "n": 1}'

    def test_escaped_quotes(self):
        text = '{"content": "he said \\"run\\"", "n": 1}'
        assert _extract_json_object(text) == text

    def test_unbalanced_returns_none(self):
        assert _extract_json_object('{"a": 1') is None

    def test_no_object(self):
        assert _extract_json_object("no json here") is None

    def test_start_offset(self):
        text = '{x} then {"a": 1}'
        assert _extract_json_object(text, 3) == '{"a": 1}'


class TestParseJsonObject:
    def test_direct(self):
        assert parse_json_object('{"title": "A"}') == {"title": "A"}

    def test_object_wrapped_in_prose(self):
        text = 'The story continues. {"title": "A", "choices": []} Thanks for reading.'
        assert parse_json_object(text) == {"title": "A", "choices": []}

    def test_fenced_with_trailing_comma(self):
        text = '```json\n{"title": "A", "choices": ["x",],}\n```'
        assert parse_json_object(text) == {"title": "A", "choices": ["x"]}

    def test_prose_braces_before_object_on_same_line(self):
        text = "Here is the {chapter} you asked for: " + chapter_json(title="Fog")
        parsed = parse_json_object(text)
        assert parsed["title"] == "Fog"
        assert len(parsed["choices"]) == 2

    def test_unbalanced_prose_brace_before_object(self):
        text = 'Use { to open: {"title": "A", "choices": []}'
        assert parse_json_object(text) == {"title": "A", "choices": []}

    def test_scalar_is_rejected(self):
        with pytest.raises(ParseError):
            parse_json_object("42")

    @pytest.mark.parametrize("text", ["", "   ", "I cannot write that story.", '{"title": '])
    def test_unparseable_raises_parse_error(self, text):
        with pytest.raises(ParseError):
            parse_json_object(text)

    def test_parse_error_is_generation_error(self):
        with pytest.raises(GenerationError):
            parse_json_object("nothing")
