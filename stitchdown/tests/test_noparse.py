"""
Tests for noparse block extraction and restoration.
"""

import pytest

from stitchdown.noparse import (PLACEHOLDER_PREFIX, extract_noparse_blocks,
                                has_noparse_blocks, restore_noparse_blocks,
                                wrap_noparse)


@pytest.mark.parametrize(
    "inner",
    [
        "",
        "plain",
        '{{include contract=config func="logo"}}',
        "{{noparse}}nested{{/noparse}} tail",
        "multi\nline\n{{chunk collection=\"c\" index=1}}",
    ],
)
def test_restore_returns_inner_content(inner):
    text = f"before {wrap_noparse(inner)} after"
    content, blocks = extract_noparse_blocks(text)
    assert inner not in content or inner == ""
    assert restore_noparse_blocks(content, blocks) == f"before {inner} after"


def test_each_block_gets_its_own_placeholder():
    text = "{{noparse}}a{{/noparse}} {{noparse}}b{{/noparse}}"
    content, blocks = extract_noparse_blocks(text)
    assert len(blocks) == 2
    assert blocks[0].placeholder_id != blocks[1].placeholder_id
    assert content.count(PLACEHOLDER_PREFIX) == 2
    assert [b.inner_content for b in blocks] == ["a", "b"]
    assert blocks[0].original == "{{noparse}}a{{/noparse}}"


def test_tag_names_are_case_insensitive():
    content, blocks = extract_noparse_blocks("{{NOPARSE}}x{{/NoParse}}")
    assert len(blocks) == 1
    assert restore_noparse_blocks(content, blocks) == "x"


def test_only_outermost_pair_is_stripped():
    text = "{{noparse}}a{{noparse}}b{{/noparse}}c{{/noparse}}"
    content, blocks = extract_noparse_blocks(text)
    assert len(blocks) == 1
    assert restore_noparse_blocks(content, blocks) == "a{{noparse}}b{{/noparse}}c"


@pytest.mark.parametrize("text", ["{{noparse}}open only", "close only{{/noparse}}", "none"])
def test_unbalanced_tags_are_left_alone(text):
    content, blocks = extract_noparse_blocks(text)
    assert content == text
    assert blocks == []
    assert not has_noparse_blocks(text)


def test_placeholders_differ_between_calls():
    _, first = extract_noparse_blocks(wrap_noparse("x"))
    _, second = extract_noparse_blocks(wrap_noparse("x"))
    assert first[0].placeholder_id != second[0].placeholder_id


def test_stray_closing_tag_ends_wrapped_block_early():
    content, blocks = extract_noparse_blocks(wrap_noparse("a{{/noparse}}b"))
    assert [b.inner_content for b in blocks] == ["a"]
    assert restore_noparse_blocks(content, blocks) == "ab{{/noparse}}"
