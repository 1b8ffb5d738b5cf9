"""
Tests for the render continuation waterfall.
"""

import asyncio

import pytest

from stitchdown import (CallableFetcher, RemoteCallError,
                        load_render_continuations,
                        load_render_continuations_sync)
from stitchdown.continuation import (extract_placeholder_paths,
                                     extract_render_paths,
                                     has_render_placeholders,
                                     replace_placeholder)
from stitchdown.tags import parse_progressive_tags


def placeholder(path):
    return parse_progressive_tags(f'{{{{render path="{path}"}}}}').content


class PathServer:
    """Serves ``render(path, viewer)`` from a dict of path -> content."""

    def __init__(self, pages, delay=0):
        self.pages = pages
        self.delay = delay
        self.paths = []
        self.active = 0
        self.max_active = 0

    async def call(self, target, fn, args):
        path = args[0].value
        self.paths.append(path)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if path not in self.pages:
                raise RemoteCallError(target, fn, f"no page at {path}")
            return self.pages[path]
        finally:
            self.active -= 1

    def fetcher(self):
        return CallableFetcher(self.call)


def run_waterfall(content, server, **kwargs):
    return asyncio.run(load_render_continuations(content, server.fetcher(), "C1", **kwargs))


class TestPlaceholders:
    def test_attribute_order_does_not_matter(self):
        a = '<div data-type="render" data-path="/x"></div>'
        b = "<div data-path='/x' class=\"p\" data-type=render></div>"
        assert extract_placeholder_paths(a) == ["/x"]
        assert extract_placeholder_paths(b) == ["/x"]

    def test_other_divs_are_ignored(self):
        html = '<div data-type="chunk" data-path="/x"></div><div data-path="/y">text</div>'
        assert extract_placeholder_paths(html) == []
        assert not has_render_placeholders(html)

    def test_escaped_paths_are_unescaped(self):
        assert extract_placeholder_paths(placeholder("/a?b=1&c=2")) == ["/a?b=1&c=2"]

    def test_extract_render_paths_merges_tags_and_placeholders(self):
        content = '{{render path="/a"}}' + placeholder("/b") + placeholder("/a")
        assert extract_render_paths(content) == ["/a", "/b"]

    def test_replace_placeholder_only_touches_matching_path(self):
        content = placeholder("/a") + "|" + placeholder("/b")
        replaced = replace_placeholder(content, "/a", "A")
        assert replaced.startswith("A|<div ")
        assert extract_placeholder_paths(replaced) == ["/b"]


class TestWaterfall:
    def test_single_continuation(self):
        server = PathServer({"/more": b"more content"})
        result = run_waterfall("top " + placeholder("/more"), server)
        assert result.content == "top more content"
        assert result.continuations_loaded == 1
        assert result.errors == []
        assert result.limit_reached is False

    def test_chained_continuations(self):
        server = PathServer({"/p2": "two " + placeholder("/p3"), "/p3": "three"})
        result = run_waterfall("one " + placeholder("/p2"), server)
        assert result.content == "one two three"
        assert result.continuations_loaded == 2
        assert server.paths == ["/p2", "/p3"]

    def test_self_reference_terminates(self):
        server = PathServer({"/loop": "again " + placeholder("/loop")})
        result = run_waterfall(placeholder("/loop"), server)
        assert result.continuations_loaded == 1
        assert server.paths == ["/loop"]
        assert result.content == "again " + placeholder("/loop")

    def test_errors_are_collected_per_path(self):
        errors = []
        server = PathServer({"/ok": "ok"})
        result = run_waterfall(
            placeholder("/ok") + placeholder("/missing"),
            server,
            on_error=lambda e, path: errors.append(path),
        )
        assert result.continuations_loaded == 1
        assert [e.path for e in result.errors] == ["/missing"]
        assert result.errors[0].message == "no page at /missing"
        assert errors == ["/missing"]
        assert result.content.startswith("ok<div ")

    def test_unexpected_errors_propagate(self):
        async def broken(target, fn, args):
            raise ValueError("bug")

        with pytest.raises(ValueError):
            asyncio.run(
                load_render_continuations(placeholder("/x"), CallableFetcher(broken), "C1")
            )

    def test_post_processor_failure_is_recorded_for_its_path(self):
        server = PathServer({"/bad": "bad", "/good": "good"})
        reported = []

        def post_process(path, raw):
            if path == "/bad":
                raise ValueError("markdown failed")
            return raw

        result = run_waterfall(
            placeholder("/bad") + "|" + placeholder("/good"),
            server,
            on_continuation_loaded=post_process,
            on_error=lambda e, path: reported.append(path),
        )
        assert result.content.endswith("|good")
        assert result.continuations_loaded == 1
        assert [e.path for e in result.errors] == ["/bad"]
        assert result.errors[0].message == "markdown failed"
        assert isinstance(result.errors[0].error, ValueError)
        assert reported == ["/bad"]

    def test_post_processor_output_is_substituted(self):
        server = PathServer({"/a": "raw"})
        result = run_waterfall(
            placeholder("/a"),
            server,
            on_continuation_loaded=lambda path, raw: f"[{path}:{raw.upper()}]",
        )
        assert result.content == "[/a:RAW]"

    def test_async_post_processor_can_add_placeholders(self):
        server = PathServer({"/a": "a", "/b": "b"})

        async def add_next(path, raw):
            if path == "/a":
                return raw + placeholder("/b")
            return raw

        result = run_waterfall(placeholder("/a"), server, on_continuation_loaded=add_next)
        assert result.content == "ab"
        assert result.continuations_loaded == 2

    def test_limit_stops_gracefully(self):
        pages = {f"/p{i}": f"{i}" + placeholder(f"/p{i + 1}") for i in range(10)}
        result = run_waterfall(placeholder("/p0"), PathServer(pages), max_continuations=3)
        assert result.continuations_loaded == 3
        assert result.limit_reached is True
        assert result.content.startswith("012<div ")

    def test_limit_applies_within_a_batch(self):
        server = PathServer({f"/p{i}": str(i) for i in range(5)})
        content = "".join(placeholder(f"/p{i}") for i in range(5))
        result = run_waterfall(content, server, max_concurrent=5, max_continuations=2)
        assert result.continuations_loaded == 2
        assert result.limit_reached is True
        assert server.paths == ["/p0", "/p1"]

    def test_batches_are_bounded(self):
        server = PathServer({f"/p{i}": str(i) for i in range(6)}, delay=0.01)
        content = "".join(placeholder(f"/p{i}") for i in range(6))
        result = run_waterfall(content, server, max_concurrent=2)
        assert result.content == "012345"
        assert server.max_active == 2

    def test_sync_wrapper(self):
        server = PathServer({"/a": "a"})
        result = load_render_continuations_sync(placeholder("/a"), server.fetcher(), "C1")
        assert result.content == "a"
