"""Tests for the individual tree-rewrite passes."""

import json

from notion_sync.hast import Element, Root, Text, h, to_html
from notion_sync.passes import (
    LOCAL_ASSET_ATTRIBUTE,
    PassContext,
    Slugger,
    clean_text,
    decode_href,
    decode_uri,
    heading_anchors,
    normalize_properties,
    sanitize,
    tag_images,
)


class TestSanitize:
    """Tests for the sanitize pass."""

    def test_fills_missing_structure(self):
        broken = Element("p", None, None)
        tree = Root([broken, "stray", Element("div", {}, [Text(None), 42])])
        sanitize(tree)

        assert broken.properties == {}
        assert broken.children == []
        assert len(tree.children) == 2
        div = tree.children[1]
        assert div.children[0].value == ""
        assert len(div.children) == 1


class TestNormalizeProperties:
    """Tests for normalize_properties."""

    def test_class_name_forms(self):
        tree = Root([
            Element("a", {"className": "x  y"}),
            Element("b", {"className": None}),
            Element("c", {"className": ("z", 1)}),
            Element("d", {"className": 5}),
            Element("e", {}),
        ])
        normalize_properties(tree)
        assert [el.properties["className"] for el in tree.children] == [["x", "y"], [], ["z", "1"], [], []]

    def test_urls_coerced_or_dropped(self):
        link = Element("a", {"href": {"url": "https://x.test"}})
        img = Element("img", {"src": object()})
        normalize_properties(Root([link, img]))
        assert link.properties["href"] == "https://x.test"
        assert "src" not in img.properties


class TestDecoding:
    """Tests for decode_uri and decode_href."""

    def test_reserved_characters_stay_encoded(self):
        assert decode_uri("a%20b%2Fc%3F") == "a b%2Fc%3F"

    def test_invalid_utf8_left_alone(self):
        assert decode_uri("bad%E0%A4") == "bad%E0%A4"

    def test_only_pathname_decoded(self):
        assert decode_href("/a%20b?x=%20y#frag") == "/a b?x=%20y#frag"

    def test_absolute_url(self):
        assert decode_href("https://x.test/caf%C3%A9?q=%20") == "https://x.test/café?q=%20"

    def test_other_schemes_untouched(self):
        assert decode_href("mailto:a%20b@x.test") == "mailto:a%20b@x.test"

    def test_fragment_only_untouched(self):
        assert decode_href("#caf%C3%A9") == "#caf%C3%A9"


class TestCleanText:
    """Tests for the clean_text pass."""

    def test_removes_escapes_outside_code(self):
        tree = Root([h("p", {}, "foo \\(bar\\)   baz")])
        clean_text(tree)
        assert tree.children[0].children[0].value == "foo (bar) baz"

    def test_code_text_untouched(self):
        tree = Root([h("pre", {}, h("code", {}, "foo \\(bar\\)   baz")), h("kbd", {}, "a\\_b")])
        clean_text(tree)
        assert to_html(tree) == "<pre><code>foo \\(bar\\)   baz</code></pre><kbd>a\\_b</kbd>"

    def test_link_paths_decoded(self):
        link = h("a", {"href": "/a%20b?x=%20y#frag"}, "x")
        clean_text(Root([link]))
        assert link.properties["href"] == "/a b?x=%20y#frag"


class TestTagImages:
    """Tests for the tag_images pass."""

    def test_exact_path_match(self):
        path = "assets/images/notion/parentId/objId.png"
        first = h("img", {"src": path, "alt": "one"})
        second = h("img", {"src": path, "alt": "two"})
        other = h("img", {"src": "https://elsewhere.test/x.png"})
        tag_images(Root([h("figure", {}, first), second, other]), PassContext(image_paths=[path]))

        marker = json.loads(first.properties[LOCAL_ASSET_ATTRIBUTE])
        assert marker == {"src": path, "alt": "one", "localPath": path, "index": 0}
        assert json.loads(second.properties[LOCAL_ASSET_ATTRIBUTE])["index"] == 1
        assert LOCAL_ASSET_ATTRIBUTE not in other.properties

    def test_remote_url_matched_by_object_id(self):
        path = "assets/images/notion/parentId/objId.png"
        img = h("img", {"src": "https://cdn.example/parentId/objId/pic.png?token=abc"})
        tag_images(Root([img]), PassContext(image_paths=[path]))
        assert json.loads(img.properties[LOCAL_ASSET_ATTRIBUTE])["localPath"] == path

    def test_src_is_decoded(self):
        img = h("img", {"src": "assets/my%20pic.png"})
        tag_images(Root([img]), PassContext(image_paths=["assets/my pic.png"]))
        assert img.properties["src"] == "assets/my pic.png"
        assert LOCAL_ASSET_ATTRIBUTE in img.properties


class TestHeadingAnchors:
    """Tests for Slugger and heading_anchors."""

    def test_slugs_are_unique(self):
        slugger = Slugger()
        assert [slugger.slug(t) for t in ["Hello World!", "Hello World", "Hello World"]] == [
            "hello-world", "hello-world-1", "hello-world-2",
        ]

    def test_headings_recorded(self):
        h1 = h("h1", {}, "Intro")
        h2 = h("h2", {}, h("strong", {}, "Deep"), " dive")
        kept = h("h3", {"id": "custom"}, "Other")
        context = PassContext()
        heading_anchors(Root([h1, h("div", {}, h2), kept]), context)

        assert h1.properties["id"] == "intro"
        assert h2.properties["id"] == "deep-dive"
        assert kept.properties["id"] == "custom"
        assert context.headings == [
            {"depth": 1, "slug": "intro", "text": "Intro"},
            {"depth": 2, "slug": "deep-dive", "text": "Deep dive"},
            {"depth": 3, "slug": "custom", "text": "Other"},
        ]
