"""
test_image_matcher.py — Unit tests for image_matcher.py
"""

from __future__ import annotations

from image_matcher import (
    DEGRADED_LINK_TEXT,
    degrade_failed_images,
    extract_candidates,
    inject_asset_ids,
    match_cdn_id,
    match_filename,
    remove_images,
    tag_attributes,
)
from models import ImageFailureReason, ImageKind, ImageProcessResult


def _ok(url, uid, index=0):
    return ImageProcessResult(id=f"img-{index}", original_url=url, success=True, uid=uid)


def _failed(url, index=0):
    return ImageProcessResult(
        id=f"img-{index}", original_url=url, success=False, failure_reason=ImageFailureReason.NOT_FOUND
    )


# ══════════════════════════════════════════════════════════════
# extract_candidates()
# ══════════════════════════════════════════════════════════════

class TestExtractCandidates:
    """Test building candidates from markup."""

    def test_basic_image(self):
        candidates = extract_candidates(
            '<img src="/a.png" alt="A" width="100" height="50">', base_url="https://site.com/post/"
        )
        assert len(candidates) == 1
        c = candidates[0]
        assert c.id == "img-0"
        assert c.url == "/a.png"
        assert c.normalized_url == "https://site.com/a.png"
        assert c.kind is ImageKind.IMG
        assert (c.width, c.height, c.alt) == (100, 50, "A")

    def test_lazy_image_uses_data_src(self):
        candidates = extract_candidates('<img src="data:image/gif;base64,R0lGOD" data-src="https://cdn.x/a.jpg">')
        assert candidates[0].url == "https://cdn.x/a.jpg"
        assert candidates[0].kind is ImageKind.LAZY

    def test_srcset_picks_largest(self):
        candidates = extract_candidates(
            '<img src="s.jpg" srcset="s.jpg 300w, l.jpg 1200w, m.jpg 600w">', base_url="https://site.com/post/"
        )
        assert candidates[0].url == "s.jpg"
        assert candidates[0].normalized_url == "https://site.com/post/l.jpg"
        assert candidates[0].kind is ImageKind.SRCSET

    def test_blob_and_data_kinds(self):
        candidates = extract_candidates('<img src="blob:https://x/1"><img src="data:image/png;base64,iVBO">')
        assert [c.kind for c in candidates] == [ImageKind.BLOB, ImageKind.DATA]
        assert candidates[0].normalized_url == "blob:https://x/1"

    def test_duplicates_and_tagged_images_skipped(self):
        markup = '<img src="a.png"><img src="a.png"><img src="b.png" data-mowen-uid="u1"><img alt="none">'
        candidates = extract_candidates(markup)
        assert [c.url for c in candidates] == ["a.png"]

    def test_unquoted_attributes(self):
        candidates = extract_candidates("<img src=https://x.com/a.png alt=Fig width=40>")
        assert len(candidates) == 1
        assert candidates[0].url == "https://x.com/a.png"
        assert (candidates[0].alt, candidates[0].width) == ("Fig", 40)

    def test_normalized_url_unwraps_cdn(self):
        candidates = extract_candidates(
            '<img src="//miro.medium.com/v2/resize:fit:720/1*AbCdEf.png">', base_url="https://medium.com/p/1"
        )
        assert candidates[0].url == "//miro.medium.com/v2/resize:fit:720/1*AbCdEf.png"
        assert candidates[0].normalized_url == "https://miro.medium.com/v2/1*AbCdEf.png"

    def test_order_follows_markup(self):
        candidates = extract_candidates('<img src="1.png"><p>x</p><img src="2.png">')
        assert [(c.id, c.order) for c in candidates] == [("img-0", 0), ("img-1", 1)]


# ══════════════════════════════════════════════════════════════
# inject_asset_ids()
# ══════════════════════════════════════════════════════════════

class TestInjectAssetIds:
    """Test matching results back to <img> tags."""

    def test_exact_match(self):
        markup = inject_asset_ids('<p><img src="https://x/a.png"></p>', [_ok("https://x/a.png", "uid1")])
        assert markup == '<p><img src="https://x/a.png" data-mowen-uid="uid1"></p>'

    def test_self_closing_tag(self):
        markup = inject_asset_ids('<img src="https://x/a.png" />', [_ok("https://x/a.png", "uid1")])
        assert markup == '<img src="https://x/a.png" data-mowen-uid="uid1">'

    def test_entity_encoded_src(self):
        markup = inject_asset_ids(
            '<img src="https://x/a.png?w=1&amp;h=2">', [_ok("https://x/a.png?w=1&h=2", "uid1")]
        )
        assert 'data-mowen-uid="uid1"' in markup

    def test_base_url_match_ignores_query(self):
        markup = inject_asset_ids('<img src="https://x/a.png?w=640">', [_ok("https://x/a.png?w=100", "uid1")])
        assert 'data-mowen-uid="uid1"' in markup

    def test_identifier_match_ignores_size_suffix(self):
        tag = '<img data-src="https://mmbiz.qpic.cn/mmbiz_png/AbCdEfGhIjKlMnOp/0?wx_fmt=png">'
        result = _ok("https://mmbiz.qpic.cn/mmbiz_png/AbCdEfGhIjKlMnOp/640?wx_fmt=png", "uid1")
        assert 'data-mowen-uid="uid1"' in inject_asset_ids(tag, [result])

    def test_lazy_attribute_match(self):
        markup = inject_asset_ids(
            '<img src="data:image/gif;base64,R0l" data-src="https://x/a.png">', [_ok("https://x/a.png", "uid1")]
        )
        assert 'data-mowen-uid="uid1"' in markup

    def test_tagged_image_not_retagged(self):
        markup = inject_asset_ids(
            '<img src="https://x/a.png">',
            [_ok("https://x/a.png", "uid1", 0), _ok("https://x/a.png", "uid2", 1)],
        )
        assert markup.count("data-mowen-uid") == 1
        assert "uid2" not in markup

    def test_all_occurrences_tagged(self):
        markup = inject_asset_ids(
            '<img src="https://x/a.png"><img src="https://x/a.png">', [_ok("https://x/a.png", "uid1")]
        )
        assert markup.count('data-mowen-uid="uid1"') == 2

    def test_failed_results_ignored(self):
        markup = '<img src="https://x/a.png">'
        assert inject_asset_ids(markup, [_failed("https://x/a.png")]) == markup

    def test_unmatched_result_leaves_markup(self):
        markup = '<img src="https://x/a.png">'
        assert inject_asset_ids(markup, [_ok("https://other/zzz.gif", "uid1")]) == markup


class TestStrategies:
    """Test individual match strategies."""

    def test_filename_needs_more_than_five_chars(self):
        assert match_filename("https://x/a.png") is None
        assert match_filename("https://x/photo.png")({"src": "https://cdn/y/photo.png"})

    def test_medium_id_matches_srcset(self):
        predicate = match_cdn_id("https://miro.medium.com/v2/resize:fit:1400/1*AbCdEf_123.png")
        attrs = {"src": "x.png", "srcset": "https://miro.medium.com/v2/resize:fit:640/1*AbCdEf_123.png 640w"}
        assert predicate(attrs)

    def test_cdn_id_not_applicable(self):
        assert match_cdn_id("https://example.com/a.png") is None

    def test_tag_attributes(self):
        attrs = tag_attributes("<img SRC='a.png' alt=\"x &amp; y\">")
        assert attrs == {"src": "a.png", "alt": "x & y"}

    def test_tag_attributes_unquoted_and_bare(self):
        attrs = tag_attributes("<img src=https://x.com/a.png alt=Fig loading=lazy hidden>")
        assert attrs == {"src": "https://x.com/a.png", "alt": "Fig", "loading": "lazy", "hidden": ""}

    def test_unquoted_tag_gets_asset_id(self):
        markup = inject_asset_ids("<p><img src=https://x.com/a.png alt=Fig></p>", [_ok("https://x.com/a.png", "u1")])
        assert markup == '<p><img src=https://x.com/a.png alt=Fig data-mowen-uid="u1"></p>'


# ══════════════════════════════════════════════════════════════
# degrade_failed_images() / remove_images()
# ══════════════════════════════════════════════════════════════

class TestDegradeAndRemove:
    """Test failure handling and image stripping."""

    def test_failed_image_becomes_link_with_alt(self):
        markup = degrade_failed_images('<p><img src="https://x/a.png" alt="示意图"></p>', [_failed("https://x/a.png")])
        assert markup == '<p><a href="https://x/a.png">示意图</a></p>'

    def test_failed_image_without_alt(self):
        markup = degrade_failed_images('<img src="https://x/a.png">', [_failed("https://x/a.png")])
        assert markup == f'<a href="https://x/a.png">{DEGRADED_LINK_TEXT}</a>'

    def test_uploaded_image_not_degraded(self):
        markup = '<img src="https://x/a.png" data-mowen-uid="uid1">'
        assert degrade_failed_images(markup, [_failed("https://x/a.png")]) == markup

    def test_remove_images(self):
        assert remove_images('<p>a<img src="x.png">b</p>') == "<p>ab</p>"
