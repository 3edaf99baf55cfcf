"""Tests for the streamed markup filter."""

from __future__ import annotations

from inkpilot.ai.orchestration.stream_filter import MarkupPair, StreamFilter


def test_plain_text_passes_through() -> None:
    stream_filter = StreamFilter()

    assert stream_filter.feed("Hello ") == "Hello "
    assert stream_filter.feed("world") == "world"
    assert stream_filter.flush() == ""
    assert stream_filter.visible_text == "Hello world"
    assert stream_filter.saw_markup is False


def test_markup_split_across_chunks_is_hidden() -> None:
    stream_filter = StreamFilter()

    assert stream_filter.feed("Answer <tool") == "Answer "
    assert stream_filter.feed('_call>{"x": 1}</tool_') == ""
    assert stream_filter.inside_markup is True
    assert stream_filter.feed("call> done") == " done"
    assert stream_filter.inside_markup is False
    assert stream_filter.visible_text == "Answer  done"
    assert stream_filter.saw_markup is True


def test_comparisons_are_not_mistaken_for_markup() -> None:
    stream_filter = StreamFilter()

    assert stream_filter.feed("x < y and <b>bold</b>") == "x < y and <b>bold</b>"


def test_held_prefix_is_released_on_flush() -> None:
    stream_filter = StreamFilter()

    assert stream_filter.feed("see <tool") == "see "
    assert stream_filter.flush() == "<tool"
    assert stream_filter.visible_text == "see <tool"


def test_held_prefix_is_released_when_it_diverges() -> None:
    stream_filter = StreamFilter()

    assert stream_filter.feed("a <to") == "a "
    assert stream_filter.feed("day>") == "<today>"


def test_unclosed_block_is_discarded_on_flush() -> None:
    stream_filter = StreamFilter()

    assert stream_filter.feed('Calling <tool_call>{"name": "search", "argu') == "Calling "
    assert stream_filter.flush() == ""
    assert stream_filter.visible_text == "Calling "


def test_markers_match_case_insensitively() -> None:
    stream_filter = StreamFilter()

    assert stream_filter.feed("a<TOOL_CALL>{}</Tool_Call>b") == "ab"


def test_marker_family_and_invoke_forms_are_hidden() -> None:
    stream_filter = StreamFilter()

    visible = stream_filter.feed(
        "one<|tool_calls_begin|>x<|tool_calls_end|>two"
        '<invoke name="search"><parameter name="q">x</parameter></invoke>three'
    )

    assert visible == "onetwothree"


def test_custom_markup_pairs() -> None:
    stream_filter = StreamFilter([MarkupPair("[[", "]]")])

    assert stream_filter.feed("keep [[drop]] keep") == "keep  keep"
