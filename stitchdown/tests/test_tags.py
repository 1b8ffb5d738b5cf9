"""
Tests for tag parsing, resolution keys and progressive placeholders.
"""

import pytest

from stitchdown.tags import (FLAG, ChunkTag, ContinuationTag, RegexTagScanner,
                             create_include_key, create_tag_id, has_includes,
                             has_progressive_tags, has_render_tags,
                             parse_attributes, parse_chunk_tags,
                             parse_continuation_tags, parse_includes,
                             parse_progressive_tags, parse_render_tags,
                             placeholder_for)


class TestParseAttributes:
    def test_quoting_styles_and_flags(self):
        attrs = parse_attributes("""a="one two" b='three' c=four viewer""")
        assert attrs == {"a": "one two", "b": "three", "c": "four", "viewer": FLAG}

    def test_later_duplicates_win(self):
        assert parse_attributes('x="1" x="2"') == {"x": "2"}

    def test_empty_quoted_value_is_not_a_flag(self):
        attrs = parse_attributes('path=""')
        assert attrs["path"] == ""
        assert attrs["path"] is not FLAG


class TestParseIncludes:
    def test_offsets_match_source_text(self):
        text = 'A {{include contract=X func="h"}} B'
        [tag] = parse_includes(text)
        assert text[tag.start : tag.end] == tag.original
        assert tag.contract == "X"
        assert tag.func == "h"
        assert tag.path is None

    def test_document_order(self):
        text = "{{include contract=A}} and {{include contract=B}}"
        assert [t.contract for t in parse_includes(text)] == ["A", "B"]

    def test_include_without_contract_is_dropped(self):
        text = '{{include func="h"}} {{include contract=Y}}'
        assert [t.contract for t in parse_includes(text)] == ["Y"]

    def test_params_exclude_standard_attributes(self):
        [tag] = parse_includes(
            '{{include contract=@main func="nav_include" viewer return_path="@main:/b/1"}}'
        )
        assert tag.params == {"viewer": FLAG, "return_path": "@main:/b/1"}
        assert tag.has_custom_params()

    def test_parsing_is_idempotent(self):
        text = '{{include contract=A path="/x"}} {{chunk collection="c" index=1}}'
        assert parse_includes(text) == parse_includes(text)
        assert parse_chunk_tags(text) == parse_chunk_tags(text)

    def test_tag_attributes_are_read_only(self):
        [tag] = parse_includes("{{include contract=A}}")
        with pytest.raises(TypeError):
            tag.attributes["contract"] = "B"

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "plain text",
            "{{include func=x}}",
            "{{include contract=A}}",
            "{{ include contract=A }}",
            "{{include}}",
        ],
    )
    def test_has_includes_agrees_with_parse(self, text):
        assert has_includes(text) == bool(parse_includes(text))


class TestProgressiveTags:
    def test_chunk_tag(self):
        [tag] = parse_chunk_tags('{{chunk collection="posts" index=3 placeholder="..."}}')
        assert (tag.collection, tag.index, tag.placeholder) == ("posts", 3, "...")
        assert not tag.is_expanded
        assert tag.expanded is False

    def test_chunk_without_integer_index_is_dropped(self):
        assert parse_chunk_tags('{{chunk collection="posts" index=x}}') == []
        assert parse_chunk_tags("{{chunk index=1}}") == []

    def test_continuation_defaults(self):
        [tag] = parse_continuation_tags('{{continue collection="posts"}}')
        assert tag.from_index == 0
        assert tag.total is None

    def test_continuation_with_bounds(self):
        [tag] = parse_continuation_tags('{{continue collection="posts" from=5 total=9}}')
        assert (tag.from_index, tag.total) == (5, 9)

    def test_expanded_chunk_points_at_continuation(self):
        [cont] = parse_continuation_tags('xx{{continue collection="p" from=2}}')
        chunk = ChunkTag.from_continuation(cont, 4)
        assert chunk.is_expanded
        assert chunk.original == cont.original
        assert (chunk.collection, chunk.index) == ("p", 4)
        assert (chunk.start, chunk.end) == (cont.start, cont.end)

    def test_render_tag_requires_path(self):
        assert [t.path for t in parse_render_tags('{{render path="/more"}}{{render}}')] == ["/more"]
        assert has_render_tags('{{render path="/more"}}')
        assert not has_render_tags("{{render x=1}}")

    @pytest.mark.parametrize(
        "text,expected",
        [
            ('{{chunk collection="c" index=0}}', True),
            ('{{continue collection="c"}}', True),
            ('{{render path="/x"}}', False),
            ("{{chunk index=0}}", False),
        ],
    )
    def test_has_progressive_tags(self, text, expected):
        assert has_progressive_tags(text) is expected

    def test_parse_progressive_tags_replaces_with_placeholders(self):
        text = (
            'A {{chunk collection="posts" index=0}} B '
            '{{continue collection="posts" from=1}} C {{render path="/more"}}'
        )
        parsed = parse_progressive_tags(text)

        assert "{{" not in parsed.content
        assert parsed.content.startswith("A <div ")
        assert [t.kind for t in parsed.tags] == ["chunk", "continue"]
        assert [t.path for t in parsed.render_tags] == ["/more"]
        assert 'data-progressive-id="chunk-posts-0"' in parsed.content
        assert 'data-progressive-id="continue-posts-1"' in parsed.content
        assert 'data-type="render"' in parsed.content
        assert parsed.has_progressive

    def test_placeholder_escapes_attribute_values(self):
        [tag] = parse_render_tags("""{{render path='/a"b'}}""")
        assert 'data-path="/a&quot;b"' in placeholder_for(tag)

    def test_tag_ids(self):
        [chunk] = parse_chunk_tags('{{chunk collection="c" index=2}}')
        [cont] = parse_continuation_tags('{{continue collection="c" from=3}}')
        [render] = parse_render_tags('{{render path="/p"}}')
        assert create_tag_id(chunk) == "chunk-c-2"
        assert create_tag_id(cont) == "continue-c-3"
        assert create_tag_id(render) == "render-/p"
        assert isinstance(cont, ContinuationTag)


class TestIncludeKey:
    def test_legacy_key(self):
        assert create_include_key("C1", "nav", "/x") == "C1:nav|/x|"
        assert create_include_key("C1") == "C1:||"

    def test_params_are_sorted_and_flags_bare(self):
        key = create_include_key("C1", "nav", None, {"viewer": FLAG, "b_id": "5"})
        assert key == "C1:nav||b_id=5,viewer"

    def test_params_distinguish_keys(self):
        assert create_include_key("C1", "f", None, {"a": "1"}) != create_include_key(
            "C1", "f", None, {"a": "2"}
        )


class TestScanner:
    def test_kinds_filter(self):
        scanner = RegexTagScanner()
        text = '{{include contract=A}}{{render path="/x"}}'
        assert [t.kind for t in scanner.scan(text)] == ["include", "render"]
        assert [t.kind for t in scanner.scan(text, ("render",))] == ["render"]

    def test_custom_scanner_is_used(self):
        class NoTags(RegexTagScanner):
            def scan(self, text, kinds=None):
                return []

        assert parse_includes("{{include contract=A}}", NoTags()) == []
