"""Tests for the HTTP surface.

The app is built with create_app() around a temporary vault and the
FakeIndexClient; TestClient is used without entering the lifespan, so no
watcher or startup reindex runs unless a test asks for it.
"""

import asyncio
import contextlib
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from noteapi.config import Settings
from noteapi.main import create_app, monitor_index
from noteapi.tests.fakes import FakeIndexClient


def _error_code(response) -> str:
    return response.json()["detail"]["error"]["code"]


def _create(client: TestClient, path: str, content: str = "", frontmatter: dict | None = None):
    return client.post(
        "/notes", json={"path": path, "content": content, "frontmatter": frontmatter or {}}
    )


# =============================================================================
# Auth & Health
# =============================================================================


class TestAuth:
    """Tests for API key authentication."""

    def test_health_is_public(self, app: FastAPI) -> None:
        """Test that /health and / need no key."""
        client = TestClient(app)
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["search"] is True
        assert client.get("/").status_code == 200

    @pytest.mark.parametrize("header", [None, "Bearer wrong", "test-key-but-longer"])
    def test_rejects_bad_key(self, app: FastAPI, header: str | None) -> None:
        """Test that missing or wrong keys get 401."""
        headers = {"Authorization": header} if header else {}
        response = TestClient(app).get("/notes", headers=headers)

        assert response.status_code == 401
        assert _error_code(response) == "unauthorized"

    def test_empty_configured_key_locks_api(self, vault: Path, fake_index: FakeIndexClient) -> None:
        """Test that an unset NOTEAPI_KEY does not open the API."""
        settings = Settings(_env_file=None, vault_root=vault, noteapi_key="")
        client = TestClient(create_app(settings, index=fake_index))

        assert client.get("/notes", headers={"Authorization": "Bearer "}).status_code == 401
        assert client.get("/notes").status_code == 401


# =============================================================================
# Request Hardening
# =============================================================================


class TestHardening:
    """Tests for rate limiting, body size limits and response headers."""

    def test_security_headers(self, client: TestClient) -> None:
        """Test that success and error responses carry the hardening headers."""
        for response in (client.get("/health"), client.get("/notes/missing.md")):
            assert response.headers["X-Content-Type-Options"] == "nosniff"
            assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
            assert response.headers["Referrer-Policy"] == "no-referrer"

    def test_oversized_body_rejected(self, vault: Path, fake_index: FakeIndexClient) -> None:
        settings = Settings(_env_file=None, vault_root=vault, noteapi_key="k", max_body_bytes=64)
        client = TestClient(create_app(settings, index=fake_index))

        response = client.post(
            "/notes",
            json={"path": "big.md", "content": "x" * 200},
            headers={"Authorization": "Bearer k"},
        )

        assert response.status_code == 413
        assert _error_code(response) == "payload_too_large"
        assert not (vault / "big.md").exists()

    def test_rate_limit(self, vault: Path, fake_index: FakeIndexClient) -> None:
        """Test that requests past the configured rate get 429."""
        settings = Settings(
            _env_file=None, vault_root=vault, noteapi_key="k", rate_limit="2/minute"
        )
        client = TestClient(create_app(settings, index=fake_index))

        assert client.get("/health").status_code == 200
        assert client.get("/health").status_code == 200
        response = client.get("/health")

        assert response.status_code == 429
        assert _error_code(response) == "rate_limited"

    def test_rate_limit_can_be_disabled(self, vault: Path, fake_index: FakeIndexClient) -> None:
        settings = Settings(
            _env_file=None,
            vault_root=vault,
            noteapi_key="k",
            rate_limit="1/minute",
            rate_limit_enabled=False,
        )
        client = TestClient(create_app(settings, index=fake_index))

        assert [client.get("/health").status_code for _ in range(3)] == [200, 200, 200]


# =============================================================================
# Notes
# =============================================================================


class TestNotes:
    """Tests for the note routes."""

    def test_create_and_read(self, client: TestClient) -> None:
        """Test that a created note reads back with the same ETag."""
        created = _create(client, "Ideas/a.md", "# Title\nhello", {"tag": "x"})
        assert created.status_code == 201
        body = created.json()
        assert body["ok"] is True
        assert body["path"] == "Ideas/a.md"
        assert created.headers["ETag"] == body["etag"]

        read = client.get("/notes/Ideas/a.md")
        assert read.status_code == 200
        assert read.headers["ETag"] == body["etag"]
        assert read.json()["frontmatter"] == {"tag": "x"}
        assert read.json()["content"].strip() == "# Title\nhello"
        assert read.json()["toc"] == [{"level": 1, "title": "Title"}]

    def test_create_errors(self, client: TestClient) -> None:
        """Test exists, not-markdown and traversal mappings."""
        _create(client, "a.md")
        assert _create(client, "a.md").status_code == 409
        assert _error_code(_create(client, "a.md")) == "exists"

        response = _create(client, "a.txt")
        assert response.status_code == 400
        assert _error_code(response) == "not_markdown"

        response = _create(client, "../escape.md")
        assert response.status_code == 400
        assert _error_code(response) == "path_traversal"

    def test_read_missing(self, client: TestClient) -> None:
        response = client.get("/notes/missing.md")
        assert response.status_code == 404
        assert _error_code(response) == "not_found"

    def test_read_non_utf8_note(self, client: TestClient, vault: Path) -> None:
        (vault / "latin1.md").write_bytes(b"caf\xe9")
        response = client.get("/notes/latin1.md")

        assert response.status_code == 400
        assert _error_code(response) == "invalid_input"

    def test_read_section_and_lines(self, client: TestClient) -> None:
        """Test section narrowing and line ranges."""
        _create(client, "s.md", "# Top\nintro\n## Part\nl1\nl2\nl3\n## End\nbye")

        section = client.get("/notes/s.md", params={"section": "Part"})
        assert section.json()["content"] == "l1\nl2\nl3"

        lines = client.get("/notes/s.md", params={"section": "Part", "lines": "2-3"})
        assert lines.json()["content"] == "l2\nl3"

        missing = client.get("/notes/s.md", params={"section": "Nope"})
        assert missing.status_code == 404

        invalid = client.get("/notes/s.md", params={"lines": "5-2"})
        assert invalid.status_code == 400
        assert _error_code(invalid) == "invalid_input"

    def test_update_preconditions(self, client: TestClient) -> None:
        """Test missing, stale and current If-Match tokens."""
        etag = _create(client, "a.md", "v1").json()["etag"]

        missing = client.patch("/notes/a.md", json={"content": "v2"})
        assert missing.status_code == 412
        assert _error_code(missing) == "precondition_missing"

        stale = client.patch("/notes/a.md", json={"content": "v2"}, headers={"If-Match": '"old"'})
        assert stale.status_code == 412
        assert _error_code(stale) == "precondition_mismatch"
        assert client.get("/notes/a.md").headers["ETag"] == etag

        ok = client.patch("/notes/a.md", json={"content": "v2"}, headers={"If-Match": etag})
        assert ok.status_code == 200
        assert ok.headers["ETag"] != etag
        assert client.get("/notes/a.md").json()["content"].strip() == "v2"

    def test_update_with_rename(self, client: TestClient) -> None:
        etag = _create(client, "a.md", "body").json()["etag"]
        response = client.patch(
            "/notes/a.md", json={"path": "moved/b.md"}, headers={"If-Match": etag}
        )

        assert response.status_code == 200
        assert response.json()["path"] == "moved/b.md"
        assert client.get("/notes/a.md").status_code == 404
        assert client.get("/notes/moved/b.md").json()["content"].strip() == "body"

    def test_move(self, client: TestClient) -> None:
        """Test the move route, with and without If-Match."""
        etag = _create(client, "a.md", "body").json()["etag"]

        moved = client.post("/notes/a.md/move", json={"newPath": "b.md"})
        assert moved.status_code == 200
        assert moved.json()["etag"] == etag

        wrong = client.post(
            "/notes/b.md/move", json={"newPath": "c.md"}, headers={"If-Match": '"x"'}
        )
        assert wrong.status_code == 412

        _create(client, "c.md")
        taken = client.post("/notes/b.md/move", json={"newPath": "c.md"})
        assert taken.status_code == 409

    def test_delete(self, client: TestClient, vault: Path) -> None:
        """Test that delete needs the current ETag and then removes the note."""
        etag = _create(client, "a.md", "body").json()["etag"]

        wrong = client.delete("/notes/a.md", headers={"If-Match": '"x"'})
        assert wrong.status_code == 412
        assert (vault / "a.md").exists()

        ok = client.delete("/notes/a.md", headers={"If-Match": etag})
        assert ok.status_code == 204
        assert not (vault / "a.md").exists()
        assert client.get("/notes/a.md").status_code == 404

    def test_list_notes(self, client: TestClient, vault: Path) -> None:
        _create(client, "b.md")
        _create(client, "dir/a.md")
        (vault / ".hidden.md").write_text("x")

        assert client.get("/notes").json() == ["b.md", "dir/a.md"]
        assert client.get("/notes", params={"path": "dir"}).json() == ["dir/a.md"]

    def test_invalid_body(self, client: TestClient) -> None:
        assert client.post("/notes", json={"content": "no path"}).status_code == 422


# =============================================================================
# Folders & Export
# =============================================================================


class TestFoldersAndExport:
    """Tests for folder and export routes."""

    def test_folders(self, client: TestClient) -> None:
        created = client.post("/folders", json={"path": "x/y"})
        assert created.status_code == 201
        assert created.json() == {"ok": True, "path": "x/y"}
        assert client.get("/folders").json() == ["x", "x/y"]

    def test_folder_traversal(self, client: TestClient) -> None:
        response = client.post("/folders", json={"path": "../outside"})
        assert response.status_code == 400

    def test_export(self, client: TestClient) -> None:
        _create(client, "p/a.md", "alpha", {"k": 1})
        _create(client, "q/b.md", "beta")

        exported = client.get("/export", params={"path": "p"}).json()
        assert exported == [{"path": "p/a.md", "frontmatter": {"k": 1}, "content": "alpha"}]
        assert len(client.get("/export").json()) == 2

    def test_export_traversal(self, client: TestClient) -> None:
        assert client.get("/export", params={"path": "../.."}).status_code == 400


# =============================================================================
# Search & Admin
# =============================================================================


class TestSearch:
    """Tests for search and index administration."""

    def test_search_after_write(self, client: TestClient) -> None:
        """Test that a written note is searchable and absent terms find nothing."""
        _create(client, "note.md", "banana in folder")

        hits = client.get("/search", params={"q": "banana"}).json()["hits"]
        assert len(hits) >= 1
        assert hits[0]["path"] == "note.md"
        assert "banana" in hits[0]["snippet"]

        assert client.get("/search", params={"q": "kumquat"}).json()["hits"] == []

    def test_search_limit_bounds(self, client: TestClient) -> None:
        assert client.get("/search", params={"q": "x", "limit": 0}).status_code == 422
        assert client.get("/search", params={"q": "x", "limit": 51}).status_code == 422

    def test_search_disabled(self, client: TestClient, fake_index: FakeIndexClient) -> None:
        fake_index.available = False
        response = client.get("/search", params={"q": "banana"})
        assert response.status_code == 503
        assert _error_code(response) == "index_unavailable"

    def test_reindex(self, client: TestClient, vault: Path, fake_index: FakeIndexClient) -> None:
        """Test that out-of-band notes are picked up by a reindex."""
        (vault / "external.md").write_text("# External")
        response = client.post("/admin/reindex")

        assert response.status_code == 200
        assert response.json() == {"indexed": 1, "skipped": False, "reason": None}
        assert fake_index.paths() == {"external.md"}

    def test_reindex_disabled(self, client: TestClient, fake_index: FakeIndexClient) -> None:
        fake_index.available = False
        response = client.post("/admin/reindex")
        assert response.status_code == 503

    def test_reindex_in_flight(self, client: TestClient, app: FastAPI) -> None:
        app.state.reindexer._in_flight = True
        response = client.post("/admin/reindex")
        assert response.status_code == 409
        assert _error_code(response) == "reindex_in_flight"

    def test_watcher_stats(self, client: TestClient) -> None:
        stats = client.get("/admin/watcher").json()
        assert stats["running"] is False
        assert stats["queue_depth"] == 0


# =============================================================================
# Graph
# =============================================================================


class TestGraph:
    """Tests for the graph routes."""

    def test_scenario(self, client: TestClient) -> None:
        """Test backlinks, aliases and neighbors for a two-note vault."""
        _create(client, "a.md", "Link to [[b]]")
        _create(client, "b.md", "", {"aliases": ["Beta"]})

        assert client.get("/graph/backlinks/b.md").json() == {"backlinks": ["a.md"]}
        assert client.get("/graph/aliases/b.md").json() == {"aliases": ["Beta"]}
        assert client.get("/graph/neighbors/a.md").json() == {"neighbors": ["b.md"]}

    def test_errors(self, client: TestClient) -> None:
        assert client.get("/graph/backlinks/missing.md").status_code == 404
        assert client.get("/graph/aliases/image.png").status_code == 400

    def test_queries_run_off_the_event_loop(
        self, client: TestClient, app: FastAPI, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test that the vault walk behind graph routes happens in a worker thread."""
        _create(client, "a.md", "[[b]]")
        _create(client, "b.md")
        graph = app.state.graph
        original = graph.load_notes
        on_loop: list[bool] = []

        def load_notes():
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                on_loop.append(False)
            else:
                on_loop.append(True)
            return original()

        monkeypatch.setattr(graph, "load_notes", load_notes)
        for kind in ("backlinks", "aliases", "neighbors"):
            assert client.get(f"/graph/{kind}/b.md").status_code == 200

        assert on_loop == [False, False, False]


# =============================================================================
# Lifespan
# =============================================================================


class TestLifespan:
    """Tests for startup and shutdown."""

    def test_startup_reindexes(
        self, vault: Path, settings: Settings, fake_index: FakeIndexClient
    ) -> None:
        """Test that entering the app ensures the index and rebuilds it."""
        (vault / "boot.md").write_text("# Boot")
        app = create_app(settings, index=fake_index)

        with TestClient(app) as client:
            assert fake_index.ensure_calls == 1
            assert fake_index.paths() == {"boot.md"}
            assert client.get("/health").json()["search"] is True

    def test_startup_with_index_down(self, vault: Path, settings: Settings) -> None:
        index = FakeIndexClient(available=False)
        (vault / "boot.md").write_text("# Boot")

        with TestClient(create_app(settings, index=index)) as client:
            assert index.add_calls == []
            assert client.get("/health").json()["search"] is False

    def test_watcher_runs_inside_lifespan(self, vault: Path, fake_index: FakeIndexClient) -> None:
        settings = Settings(
            _env_file=None, vault_root=vault, noteapi_key="k", watcher_enabled=True
        )
        app = create_app(settings, index=fake_index)

        with TestClient(app):
            assert app.state.watcher.running
        assert not app.state.watcher.running

    def test_startup_survives_unreadable_note(
        self,
        vault: Path,
        settings: Settings,
        fake_index: FakeIndexClient,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that a note the service cannot read does not stop startup."""
        (vault / "a.md").write_text("locked")
        (vault / "b.md").write_text("# B")
        original = Path.read_bytes

        def read_bytes(self: Path) -> bytes:
            if self.name == "a.md":
                raise PermissionError(13, "Permission denied", str(self))
            return original(self)

        monkeypatch.setattr(Path, "read_bytes", read_bytes)

        with TestClient(create_app(settings, index=fake_index)) as client:
            assert client.get("/health").status_code == 200
            assert fake_index.paths() == {"b.md"}

    def test_startup_survives_failed_reindex(
        self, settings: Settings, fake_index: FakeIndexClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        app = create_app(settings, index=fake_index)

        async def broken() -> None:
            raise OSError("vault unmounted")

        monkeypatch.setattr(app.state.reindexer, "reindex_all", broken)

        with TestClient(app) as client:
            assert client.get("/health").status_code == 200

    @pytest.mark.asyncio
    async def test_index_monitor_survives_errors(self, vault: Path) -> None:
        """Test that one failed recovery attempt does not end the monitor."""
        settings = Settings(
            _env_file=None, vault_root=vault, noteapi_key="k", index_retry_interval=0.01
        )
        index = FakeIndexClient(available=False)
        app = create_app(settings, index=index)
        calls = 0

        async def ensure() -> bool:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("engine exploded")
            return False

        index.ensure = ensure
        monitor = asyncio.create_task(monitor_index(app))
        try:
            for _ in range(200):
                if calls >= 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            monitor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await monitor

        assert calls >= 3
