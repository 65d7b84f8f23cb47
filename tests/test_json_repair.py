"""Tests for coercing model replies into JSON."""

import pytest

from margin_leakage.core.exceptions import ResponseParseError
from margin_leakage.utils.json_repair import (
    extract_first_json_object,
    parse_ai_array,
    parse_ndjson,
    strip_code_fences,
    try_parse_json_with_repairs,
)


class TestStripCodeFences:
    def test_returns_body_of_first_fenced_block(self):
        text = 'Here you go:\n```json\n{"a": 1}\n```\nand more ```{"b": 2}```'
        assert strip_code_fences(text) == '{"a": 1}'

    def test_removes_dangling_markers(self):
        assert strip_code_fences('```json {"a": 1}') == '{"a": 1}'

    def test_none_is_empty(self):
        assert strip_code_fences(None) == ""


class TestRepairs:
    def test_trailing_commas(self):
        assert try_parse_json_with_repairs('{"a": [1, 2,],}') == {"a": [1, 2]}

    def test_single_quotes_and_bare_keys(self):
        assert try_parse_json_with_repairs("{name: 'Widget', qty: 3}") == {"name": "Widget", "qty": 3}

    def test_smart_quotes(self):
        assert try_parse_json_with_repairs("{\u201ca\u201d: \u201cb\u201d}") == {"a": "b"}

    def test_unrepairable_returns_none(self):
        assert try_parse_json_with_repairs("{not json at all") is None


class TestExtractFirstJsonObject:
    def test_object_inside_prose(self):
        text = 'Sure! The result is {"total_products": 5, "note": "uses {braces} in text"} hope it helps'
        assert extract_first_json_object(text) == {"total_products": 5, "note": "uses {braces} in text"}

    def test_skips_unparseable_candidate(self):
        text = '{oops this is broken} then {"ok": true}'
        assert extract_first_json_object(text) == {"ok": True}

    def test_arrays_are_not_objects(self):
        assert extract_first_json_object("[1, 2, 3]") is None

    def test_no_object(self):
        assert extract_first_json_object("no json here") is None
        assert extract_first_json_object("") is None


class TestParseAiArray:
    def test_plain_array(self):
        assert parse_ai_array('[{"a": 1}, {"a": 2}]') == [{"a": 1}, {"a": 2}]

    def test_single_object_is_wrapped(self):
        assert parse_ai_array('{"a": 1}') == [{"a": 1}]

    def test_fenced_array(self):
        assert parse_ai_array('```json\n[{"a": 1}]\n```') == [{"a": 1}]

    def test_truncated_array_keeps_complete_records(self):
        assert parse_ai_array('[{"a": 1}, {"a": 2}, {"a": ') == [{"a": 1}, {"a": 2}]

    def test_missing_closing_bracket(self):
        assert parse_ai_array('[{"a": 1}, {"a": 2}') == [{"a": 1}, {"a": 2}]

    def test_newline_delimited_records(self):
        text = '{"a": 1},\n{"a": 2}\n'
        assert parse_ai_array(text) == [{"a": 1}, {"a": 2}]

    def test_garbage_raises(self):
        with pytest.raises(ResponseParseError) as exc:
            parse_ai_array("I could not combine these files.")
        assert exc.value.message == "Failed to parse API response"

    def test_non_string_raises_type_error(self):
        with pytest.raises(TypeError):
            parse_ai_array(None)


def test_parse_ndjson_drops_bad_lines():
    assert parse_ndjson('{"a": 1}\nnot json\n\n[2]') == [{"a": 1}, [2]]
