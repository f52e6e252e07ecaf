"""Tests for result archiving and the object stores."""

import asyncio
import json

import httpx
import pytest

from warmcrawl.services.archive import HttpObjectStore, LocalObjectStore, ResultArchiver

PAGES = [
    {"url": "https://www.bing.com/search?q=x", "results": [{"rank": 1}], "html": "<p>x</p>"},
    {"url": "https://www.bing.com/search?q=x&first=11", "results": [], "html": "<p>2</p>"},
]


class TestResultArchiver:
    @pytest.mark.asyncio
    async def test_archives_first_page_to_local_store(self, tmp_path):
        archiver = ResultArchiver(LocalObjectStore(tmp_path / "archive"))

        written = await archiver.archive("abc123", PAGES)

        assert written == {"html": 8, "json": written["json"]}
        assert (tmp_path / "archive" / "abc123.html").read_text() == "<p>x</p>"
        document = json.loads((tmp_path / "archive" / "abc123.json").read_text())
        assert document == {"url": PAGES[0]["url"], "results": [{"rank": 1}]}
        # the caller's result is untouched
        assert PAGES[0]["html"] == "<p>x</p>"

    @pytest.mark.asyncio
    async def test_single_page_result(self, tmp_path):
        archiver = ResultArchiver(LocalObjectStore(tmp_path))

        written = await archiver.archive("one", {"url": "u", "html": "<b>é</b>"})

        assert written["html"] == len("<b>é</b>".encode("utf-8"))

    @pytest.mark.asyncio
    async def test_existing_objects_are_not_overwritten(self, tmp_path):
        (tmp_path / "dup.html").write_text("original")
        archiver = ResultArchiver(LocalObjectStore(tmp_path))

        assert await archiver.archive("dup", PAGES) is None
        assert (tmp_path / "dup.html").read_text() == "original"

    @pytest.mark.asyncio
    async def test_result_without_html_is_not_archived(self, tmp_path):
        archiver = ResultArchiver(LocalObjectStore(tmp_path))

        assert await archiver.archive("nohtml", {"url": "u"}) is None
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_schedule_runs_in_background(self, tmp_path):
        archiver = ResultArchiver(LocalObjectStore(tmp_path))

        task = archiver.schedule("bg", PAGES)
        assert isinstance(task, asyncio.Task)
        assert archiver.pending == 1

        await archiver.drain()
        await asyncio.sleep(0)
        assert archiver.pending == 0
        assert (tmp_path / "bg.json").exists()

    @pytest.mark.asyncio
    async def test_disabled_archiver(self):
        archiver = ResultArchiver(None)

        assert not archiver.enabled
        assert archiver.schedule("x", PAGES) is None
        assert await archiver.archive("x", PAGES) is None


class TestLocalObjectStore:
    @pytest.mark.asyncio
    async def test_rejects_keys_outside_root(self, tmp_path):
        store = LocalObjectStore(tmp_path / "root")

        with pytest.raises(ValueError):
            await store.upload("../escape.json", b"{}", False)

    @pytest.mark.asyncio
    async def test_overwrite(self, tmp_path):
        store = LocalObjectStore(tmp_path)
        await store.upload("k.json", b"1", False)

        with pytest.raises(FileExistsError):
            await store.upload("k.json", b"2", False)
        assert await store.upload("k.json", b"22", True) == 2
        assert (tmp_path / "k.json").read_bytes() == b"22"


class TestHttpObjectStore:
    @pytest.mark.asyncio
    async def test_put_with_conditional_header_and_token(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        store = HttpObjectStore(
            "https://bucket.test/results/",
            auth_token="tok",
            transport=httpx.MockTransport(handler),
        )
        written = await store.upload("id.html", b"<p/>", False, "text/html; charset=utf-8")

        assert written == 4
        request = seen[0]
        assert request.method == "PUT"
        assert str(request.url) == "https://bucket.test/results/id.html"
        assert request.headers["If-None-Match"] == "*"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request.headers["Content-Type"] == "text/html; charset=utf-8"
        assert request.content == b"<p/>"

    @pytest.mark.asyncio
    async def test_precondition_failure_is_logged_not_raised(self):
        store = HttpObjectStore(
            "https://bucket.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(412)),
        )
        archiver = ResultArchiver(store)

        assert await archiver.archive("taken", PAGES) is None
