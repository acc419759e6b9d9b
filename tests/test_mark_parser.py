"""
test_mark_parser.py — Unit tests for mark_parser.py inline parsing
"""

from __future__ import annotations

from mark_parser import auto_link, clean_text, parse_inline, style_marks


BOLD = {"type": "bold"}
ITALIC = {"type": "italic"}


def link(href):
    return {"type": "link", "attrs": {"href": href}}


# ══════════════════════════════════════════════════════════════
# clean_text()
# ══════════════════════════════════════════════════════════════

class TestCleanText:
    """Test tag stripping, entities and whitespace."""

    def test_strips_tags(self):
        assert clean_text("<span>a</span>b") == "ab"

    def test_decodes_entities_and_nbsp(self):
        assert clean_text("A&amp;B&nbsp;C") == "A&B C"

    def test_collapses_whitespace_without_trimming(self):
        assert clean_text(" a\n\n  b ") == " a b "


# ══════════════════════════════════════════════════════════════
# parse_inline()
# ══════════════════════════════════════════════════════════════

class TestParseInline:
    """Test inline markup → text runs."""

    def test_plain_text(self):
        assert parse_inline("Hello") == [{"type": "text", "text": "Hello"}]

    def test_bold_run(self):
        nodes = parse_inline("Hello <b>world</b>")
        assert nodes == [
            {"type": "text", "text": "Hello "},
            {"type": "text", "text": "world", "marks": [BOLD]},
        ]

    def test_nested_marks_accumulate(self):
        nodes = parse_inline("<strong><em>both</em></strong>")
        assert nodes == [{"type": "text", "text": "both", "marks": [BOLD, ITALIC]}]

    def test_anchor_becomes_link(self):
        nodes = parse_inline('<a href="https://x.com/?a=1&amp;b=2">site</a>')
        assert nodes == [{"type": "text", "text": "site", "marks": [link("https://x.com/?a=1&b=2")]}]

    def test_anchor_without_href(self):
        nodes = parse_inline("<a>name</a>")
        assert nodes[0]["marks"] == [{"type": "link"}]

    def test_highlight_and_code(self):
        nodes = parse_inline("<mark>hi</mark><code>x()</code>")
        assert nodes[0]["marks"] == [{"type": "highlight"}]
        assert nodes[1]["marks"] == [{"type": "code"}]

    def test_style_bold(self):
        nodes = parse_inline('<span style="font-weight: 700">strong</span>')
        assert nodes[0]["marks"] == [BOLD]

    def test_plain_span_has_no_marks(self):
        nodes = parse_inline("<span>plain</span>")
        assert nodes == [{"type": "text", "text": "plain"}]

    def test_unmatched_closing_tag_ignored(self):
        nodes = parse_inline("a</b>b")
        assert [n["text"] for n in nodes] == ["a", "b"]
        assert all("marks" not in n for n in nodes)

    def test_closing_pops_most_recent_same_tag(self):
        nodes = parse_inline("<b>x<i>y</b>z</i>")
        assert nodes[0] == {"type": "text", "text": "x", "marks": [BOLD]}
        assert nodes[1] == {"type": "text", "text": "y", "marks": [BOLD, ITALIC]}
        assert nodes[2] == {"type": "text", "text": "z", "marks": [ITALIC]}

    def test_bare_url_auto_linked(self):
        nodes = parse_inline("see https://a.com/x now")
        assert nodes == [
            {"type": "text", "text": "see "},
            {"type": "text", "text": "https://a.com/x", "marks": [link("https://a.com/x")]},
            {"type": "text", "text": " now"},
        ]

    def test_url_inside_link_not_split(self):
        nodes = parse_inline('<a href="https://a.com">go to https://a.com</a>')
        assert len(nodes) == 1
        assert nodes[0]["marks"] == [link("https://a.com")]

    def test_placeholders_removed(self):
        assert parse_inline("<!--IMG:0-->text") == [{"type": "text", "text": "text"}]

    def test_empty_tags_yield_nothing(self):
        assert parse_inline("<b></b>") == []


class TestHelpers:
    """Test auto_link and style_marks directly."""

    def test_auto_link_keeps_outer_marks(self):
        nodes = auto_link("x https://a.com", [BOLD])
        assert nodes[1]["marks"] == [BOLD, link("https://a.com")]

    def test_style_marks_italic(self):
        assert style_marks(' style="font-style: italic"') == [ITALIC]

    def test_style_marks_without_style(self):
        assert style_marks(' class="x"') == []
