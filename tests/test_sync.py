"""Tests for the incremental sync engine."""

import asyncio
import json

import pytest
from fakes import FakeNotionClient, image_block, make_fetcher, page, paragraph
from notion_sync.config import SyncConfig
from notion_sync.errors import FilterParseError, NotionAPIError, RateLimited, StoreWriteFailure
from notion_sync.retry import RetryPolicy
from notion_sync.store import FileStore
from notion_sync.sync import PageState, SyncEngine

EDITED = "2024-05-01T10:00:00.000Z"
LATER = "2024-05-02T10:00:00.000Z"
SIGNED_URL = "https://cdn.example/parentId/objId/pic.png?token=abc"


def _engine(tmp_path, client, render_delays=None, **settings):
    config = SyncConfig(
        database_id="db",
        token="secret",
        content_root=tmp_path / "content",
        store_dir=tmp_path / "store",
        **settings,
    )
    fetcher, server = make_fetcher(config.content_root)

    async def fake_sleep(delay):
        if render_delays is not None:
            render_delays.append(delay)

    engine = SyncEngine(client, FileStore(config.store_dir), fetcher, config,
                        render_retry=RetryPolicy(max_retries=5, max_delay=10.0, sleep=fake_sleep))
    return engine, server


def _run(engine):
    async def main():
        try:
            return await engine.run()
        finally:
            await engine.assets.aclose()

    return asyncio.run(main())


def _store_files(tmp_path):
    return {p.name: p.read_bytes() for p in sorted((tmp_path / "store").iterdir())}


class TestIncremental:
    """Tests for change detection and deletion."""

    def test_first_run_commits_everything(self, tmp_path):
        client = FakeNotionClient(
            pages=[page("p1", EDITED, title="One"), page("p2", EDITED, title="Two")],
            children={"p1": [paragraph("a", "Hello")], "p2": [paragraph("b", "World")]},
        )
        engine, _ = _engine(tmp_path, client)
        report = _run(engine)

        assert report.pages_in(PageState.COMMITTED) == ["p1", "p2"]
        assert report.page_count == 2
        stored = json.loads((tmp_path / "store" / "p1.json").read_text(encoding="utf-8"))
        assert stored["html"] == "<p>Hello</p>"
        assert stored["digest"] == EDITED
        assert stored["data"]["Name"] == "One"

    def test_unchanged_pages_are_not_rendered(self, tmp_path):
        client = FakeNotionClient(
            pages=[page("p1", EDITED), page("p2", EDITED)],
            children={"p1": [paragraph("a", "Hello")], "p2": [paragraph("b", "World")]},
        )
        _run(_engine(tmp_path, client)[0])
        before = _store_files(tmp_path)
        client.children_calls.clear()

        report = _run(_engine(tmp_path, client)[0])

        assert report.pages_in(PageState.UNCHANGED) == ["p1", "p2"]
        assert report.rendered == 0
        assert client.children_calls == []
        assert _store_files(tmp_path) == before

    def test_edited_page_rerendered(self, tmp_path):
        client = FakeNotionClient(pages=[page("p1", EDITED)], children={"p1": [paragraph("a", "Old")]})
        _run(_engine(tmp_path, client)[0])

        client.pages = [page("p1", LATER)]
        client.children = {"p1": [paragraph("a", "New")]}
        report = _run(_engine(tmp_path, client)[0])

        assert report.pages_in(PageState.COMMITTED) == ["p1"]
        stored = json.loads((tmp_path / "store" / "p1.json").read_text(encoding="utf-8"))
        assert (stored["html"], stored["digest"]) == ("<p>New</p>", LATER)

    def test_missing_pages_deleted(self, tmp_path):
        client = FakeNotionClient(
            pages=[page("p1", EDITED), page("p2", EDITED)],
            children={"p1": [paragraph("a", "x")], "p2": [paragraph("b", "y")]},
        )
        _run(_engine(tmp_path, client)[0])

        client.pages = [page("p1", EDITED)]
        report = _run(_engine(tmp_path, client)[0])

        assert report.pages_in(PageState.DELETED) == ["p2"]
        assert sorted(_store_files(tmp_path)) == ["p1.json"]

    def test_enumeration_error_deletes_nothing(self, tmp_path):
        client = FakeNotionClient(
            pages=[page("p1", EDITED), page("p2", EDITED)],
            children={"p1": [paragraph("a", "x")], "p2": [paragraph("b", "y")]},
        )
        _run(_engine(tmp_path, client)[0])
        before = _store_files(tmp_path)

        client.query_error = NotionAPIError("internal error", status=500, code="internal_server_error")
        client.query_error_after = 1
        with pytest.raises(NotionAPIError):
            _run(_engine(tmp_path, client)[0])
        assert _store_files(tmp_path) == before

    def test_partial_pages_ignored(self, tmp_path):
        client = FakeNotionClient(pages=[{"object": "page", "id": "p9"}, page("p1", EDITED)],
                                  children={"p1": []})
        report = _run(_engine(tmp_path, client)[0])
        assert report.page_count == 1
        assert list(report.states) == ["p1"]


class TestFailures:
    """Tests for render failures and fallbacks."""

    def test_malformed_block_uses_minimal_renderer(self, tmp_path):
        client = FakeNotionClient(pages=[page("p1", EDITED)],
                                  children={"p1": [paragraph("a", "Hello"), {"id": "bad"}]})
        report = _run(_engine(tmp_path, client)[0])

        assert report.fallbacks == ["p1"]
        assert report.pages_in(PageState.COMMITTED) == ["p1"]
        stored = json.loads((tmp_path / "store" / "p1.json").read_text(encoding="utf-8"))
        assert stored["html"] == "<p>Hello</p>"

    def test_failed_render_keeps_previous_entry(self, tmp_path):
        client = FakeNotionClient(pages=[page("p1", EDITED)], children={"p1": [paragraph("a", "Old")]})
        _run(_engine(tmp_path, client)[0])
        before = _store_files(tmp_path)

        client.pages = [page("p1", LATER)]
        client.children_errors["p1"] = [NotionAPIError("boom", status=500), NotionAPIError("boom", status=500)]
        report = _run(_engine(tmp_path, client)[0])

        assert report.pages_in(PageState.FAILED_KEEP_PREVIOUS) == ["p1"]
        assert "p1" in report.errors
        assert _store_files(tmp_path) == before

    def test_one_failure_does_not_block_others(self, tmp_path):
        client = FakeNotionClient(
            pages=[page("p1", EDITED), page("p2", EDITED)],
            children={"p1": [paragraph("a", "x")], "p2": [paragraph("b", "y")]},
        )
        client.children_errors["p1"] = [NotionAPIError("boom", status=500), NotionAPIError("boom", status=500)]
        report = _run(_engine(tmp_path, client)[0])

        assert report.pages_in(PageState.FAILED_KEEP_PREVIOUS) == ["p1"]
        assert report.pages_in(PageState.COMMITTED) == ["p2"]
        assert sorted(_store_files(tmp_path)) == ["p2.json"]

    def test_store_write_failure_is_contained(self, tmp_path):
        client = FakeNotionClient(
            pages=[page("p1", EDITED), page("p2", EDITED)],
            children={"p1": [paragraph("a", "old one")], "p2": [paragraph("b", "old two")]},
        )
        _run(_engine(tmp_path, client)[0])
        previous = _store_files(tmp_path)["p1.json"]

        class FailingStore(FileStore):
            async def set(self, entry):
                if entry.id == "p1":
                    raise StoreWriteFailure(f"Cannot write entry {entry.id}: disk full")
                await super().set(entry)

        client.pages = [page("p1", LATER), page("p2", LATER)]
        client.children = {"p1": [paragraph("a", "new one")], "p2": [paragraph("b", "new two")]}
        engine, _ = _engine(tmp_path, client)
        engine.store = FailingStore(tmp_path / "store")
        report = _run(engine)

        assert report.pages_in(PageState.FAILED_KEEP_PREVIOUS) == ["p1"]
        assert report.pages_in(PageState.COMMITTED) == ["p2"]
        assert "disk full" in report.errors["p1"]
        files = _store_files(tmp_path)
        assert files["p1.json"] == previous
        assert json.loads(files["p2.json"])["html"] == "<p>new two</p>"

    def test_render_concurrency_is_bounded(self, tmp_path):
        class CountingClient(FakeNotionClient):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.in_flight = 0
                self.peak = 0

            async def list_children(self, block_id, page_size=100):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                try:
                    await asyncio.sleep(0.01)
                    async for block in super().list_children(block_id, page_size):
                        yield block
                finally:
                    self.in_flight -= 1

        page_ids = [f"p{i}" for i in range(5)]
        client = CountingClient(
            pages=[page(page_id, EDITED) for page_id in page_ids],
            children={page_id: [paragraph(f"{page_id}-a", page_id)] for page_id in page_ids},
        )
        report = _run(_engine(tmp_path, client, concurrency=2)[0])

        assert report.pages_in(PageState.COMMITTED) == page_ids
        assert client.peak == 2

    def test_rate_limited_render_backs_off(self, tmp_path):
        client = FakeNotionClient(pages=[page("p1", EDITED)], children={"p1": [paragraph("a", "x")]})
        client.children_errors["p1"] = [RateLimited(), RateLimited()]
        delays = []
        report = _run(_engine(tmp_path, client, render_delays=delays)[0])

        assert report.pages_in(PageState.COMMITTED) == ["p1"]
        assert delays == [1.0, 2.0]


class TestAssetsAndQuery:
    """Tests for image caching and query compilation during sync."""

    def test_images_cached_and_tagged(self, tmp_path):
        client = FakeNotionClient(pages=[page("p1", EDITED)], children={"p1": [image_block("i1", SIGNED_URL)]})
        engine, server = _engine(tmp_path, client)
        _run(engine)

        local = "assets/images/notion/parentId/objId.png"
        assert (tmp_path / "content" / local).read_bytes() == server.content
        stored = json.loads((tmp_path / "store" / "p1.json").read_text(encoding="utf-8"))
        assert stored["asset_paths"] == [local]
        assert 'data-local-asset="' in stored["html"]
        assert f"&quot;localPath&quot;: &quot;{local}&quot;" in stored["html"]

    def test_cover_cached(self, tmp_path):
        raw = page("p1", EDITED)
        raw["cover"] = {"type": "file", "file": {"url": "https://cdn.example/par/cov/c.jpg", "expiry_time": "x"}}
        client = FakeNotionClient(pages=[raw], children={"p1": []})
        engine, _ = _engine(tmp_path, client, cache_cover=True, src_root=tmp_path)
        _run(engine)

        stored = json.loads((tmp_path / "store" / "p1.json").read_text(encoding="utf-8"))
        assert stored["data"]["cover"]["file"]["url"] == "src/content/assets/images/notion/par/cov.jpg"

    def test_filter_expression_compiled(self, tmp_path):
        client = FakeNotionClient(pages=[], children={})
        client.database = {"title": [], "properties": {"Published": {"type": "checkbox"}}}
        _run(_engine(tmp_path, client, filter="published = true", sorts="-@edited")[0])

        assert client.last_query == {
            "filter": {"property": "Published", "checkbox": {"equals": True}},
            "sorts": [{"timestamp": "last_edited_time", "direction": "descending"}],
        }

    def test_bad_filter_aborts_run(self, tmp_path):
        client = FakeNotionClient(pages=[page("p1", EDITED)], children={"p1": []})
        with pytest.raises(FilterParseError):
            _run(_engine(tmp_path, client, filter="Missing = 1")[0])
        assert client.query_calls == 0
