"""Unit tests for CLI commands.

Commands run against a SQLite store in a temporary directory with a
deterministic embedding provider, so each command reopens the same data.
"""

import hashlib
import json
from contextlib import asynccontextmanager
from unittest.mock import patch
from uuid import uuid4

import pytest
import typer
from rich.console import Console

from commonplace.config.schema import AppConfig, EmbeddingConfig, StorageConfig
from commonplace.core.errors import NotFoundError, UpstreamError, ValidationError
from commonplace.interfaces.cli import (
    _add_async,
    _add_image_async,
    _join_async,
    _layout_async,
    _list_async,
    _neighbors_async,
    _random_async,
    _reindex_async,
    _run,
    _search_async,
    _show_async,
)
from commonplace.providers.base import EmbeddingProvider, ProviderConfig
from commonplace.service import open_graph
from commonplace.storage import create_entry_store

DIMENSION = 8


class HashingProvider(EmbeddingProvider):
    """Deterministic provider: each word hashes into one dimension."""

    def __init__(self):
        super().__init__(ProviderConfig(provider_type="fake", model_name="hashing"))

    async def embed_text(self, text: str) -> list[float]:
        vector = [0.0] * DIMENSION
        for word in text.lower().split():
            digest = hashlib.sha256(word.encode()).digest()
            vector[digest[0] % DIMENSION] += 1.0
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_text(t) for t in texts]

    async def describe_image(self, image_url: str) -> str:
        return f"picture of {image_url.rsplit('/', 1)[-1]}"

    def get_dimension(self) -> int:
        return DIMENSION


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        data_dir=tmp_path,
        embedding=EmbeddingConfig(provider="local", model_name="hashing", dimension=DIMENSION),
        storage=StorageConfig(
            store_type="sqlite", connection_string=f"sqlite:///{tmp_path / 'entries.db'}"
        ),
    )


@pytest.fixture
def cli_env(config):
    """Patch config loading and provider creation inside the CLI module."""

    @asynccontextmanager
    async def fake_open_graph(app_config):
        async with open_graph(app_config, embedding_provider=HashingProvider()) as graph:
            yield graph

    with patch("commonplace.interfaces.cli._load_config", return_value=config), patch(
        "commonplace.interfaces.cli.open_graph", fake_open_graph
    ), patch("commonplace.interfaces.cli.console", Console(width=200)):
        yield config


async def _stored_entries(config):
    store = create_entry_store(config.storage)
    await store.initialize()
    try:
        return await store.list_entries(limit=None)
    finally:
        await store.close()


@pytest.mark.asyncio
class TestWriteCommands:
    """Test add, add-image and join."""

    async def test_add(self, cli_env, capsys):
        await _add_async("the quick brown fox", "Fables", "https://example.com/f", None, None)

        entries = await _stored_entries(cli_env)
        assert len(entries) == 1
        assert entries[0].content == "the quick brown fox"
        assert entries[0].metadata.article == "Fables"
        assert "Added entry" in capsys.readouterr().out

    async def test_add_with_section(self, cli_env):
        await _add_async("text", "Book", "https://example.com/b", "Chapter 2", None)

        entries = await _stored_entries(cli_env)
        assert entries[0].metadata.source_label == "Book > Chapter 2"

    async def test_add_missing_content(self, cli_env):
        with pytest.raises(ValidationError):
            await _add_async("  ", "Book", "https://example.com/b", None, None)
        assert await _stored_entries(cli_env) == []

    async def test_add_image(self, cli_env):
        await _add_image_async("https://example.com/img/page.png", "Book", "https://example.com/b", None, None)

        entries = await _stored_entries(cli_env)
        assert entries[0].content == "picture of page.png"
        assert entries[0].metadata.image_url == "https://example.com/img/page.png"

    async def test_join(self, cli_env, capsys):
        await _add_async("alpha", "A", "https://example.com/a", None, None)
        await _add_async("beta", "B", "https://example.com/b", None, None)
        first, second = await _stored_entries(cli_env)

        await _join_async(str(first.id), str(second.id), None)

        refreshed = {e.id: e for e in await _stored_entries(cli_env)}
        assert refreshed[first.id].joins == [second.id]
        assert refreshed[second.id].joins == [first.id]
        assert "Joined" in capsys.readouterr().out

    async def test_join_invalid_id(self, cli_env):
        with pytest.raises(ValidationError):
            await _join_async("not-a-uuid", str(uuid4()), None)

    async def test_join_missing_entry(self, cli_env):
        await _add_async("alpha", "A", "https://example.com/a", None, None)
        (entry,) = await _stored_entries(cli_env)

        with pytest.raises(NotFoundError):
            await _join_async(str(entry.id), str(uuid4()), None)


@pytest.mark.asyncio
class TestReadCommands:
    """Test search, show, neighbors, list, random, layout and reindex."""

    @pytest.fixture
    async def seeded(self, cli_env):
        await _add_async("gardens grow slowly", "Gardening", "https://example.com/g", "Soil", None)
        await _add_async("rivers run to the sea", "Geography", "https://example.com/r", None, None)
        await _add_async("seeds need water", "Gardening", "https://example.com/g", "Soil", None)
        return await _stored_entries(cli_env)

    async def test_search(self, seeded, capsys):
        capsys.readouterr()
        await _search_async("rivers run to the sea", 1, None)

        out = capsys.readouterr().out
        assert "Found 1 result(s)" in out
        assert "rivers run to the sea" in out

    async def test_search_empty_store(self, cli_env, capsys):
        await _search_async("anything", 5, None)
        assert "No results found" in capsys.readouterr().out

    async def test_show(self, seeded, capsys):
        capsys.readouterr()
        await _show_async(str(seeded[0].id), None)
        assert seeded[0].content in capsys.readouterr().out

    async def test_show_missing(self, cli_env):
        with pytest.raises(NotFoundError):
            await _show_async(str(uuid4()), None)

    async def test_neighbors(self, seeded, capsys):
        newest, middle, _ = seeded
        await _join_async(str(newest.id), str(middle.id), None)
        capsys.readouterr()

        await _neighbors_async(str(newest.id), None)
        assert str(middle.id) in capsys.readouterr().out

    async def test_neighbors_none(self, seeded, capsys):
        capsys.readouterr()
        await _neighbors_async(str(seeded[0].id), None)
        assert "No joined entries" in capsys.readouterr().out

    async def test_list(self, seeded, capsys):
        capsys.readouterr()
        await _list_async(2, 0, False, False, None)
        assert "Entries (2 of 3)" in capsys.readouterr().out

    async def test_list_grouped(self, seeded, capsys):
        capsys.readouterr()
        await _list_async(50, 0, False, True, None)

        out = capsys.readouterr().out
        assert "Gardening > Soil" in out
        assert "Geography" in out

    async def test_list_empty(self, cli_env, capsys):
        await _list_async(50, 0, False, False, None)
        assert "No entries yet" in capsys.readouterr().out

    async def test_random(self, seeded, capsys):
        capsys.readouterr()
        await _random_async(None)
        assert "Random highlight" in capsys.readouterr().out

    async def test_random_empty_store(self, cli_env):
        with pytest.raises(typer.Exit) as exc_info:
            await _random_async(None)
        assert exc_info.value.exit_code == 1

    async def test_layout_json(self, seeded, capsys):
        await _join_async(str(seeded[0].id), str(seeded[1].id), None)
        capsys.readouterr()

        await _layout_async(None, None, True, None)

        lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith('{"nodes"')]
        payload = json.loads(lines[-1])
        assert {node["id"] for node in payload["nodes"]} == {str(e.id) for e in seeded}
        assert all(isinstance(node["x"], float) for node in payload["nodes"])
        assert sorted(payload["edges"][0]) == sorted([str(seeded[0].id), str(seeded[1].id)])

    async def test_layout_filtered_by_article(self, seeded, capsys):
        capsys.readouterr()
        await _layout_async("Geography", None, True, None)

        lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith('{"nodes"')]
        payload = json.loads(lines[-1])
        assert len(payload["nodes"]) == 1
        assert payload["nodes"][0]["strategy"] == "single"
        assert payload["edges"] == []

    async def test_layout_negative_limit(self, cli_env):
        with pytest.raises(ValidationError):
            await _layout_async(None, -1, True, None)

    async def test_reindex(self, seeded, capsys):
        capsys.readouterr()
        await _reindex_async(None)
        assert "Index rebuilt with 3 entries" in capsys.readouterr().out


class TestExitCodes:
    """Errors map to exit codes by kind."""

    def test_success(self):
        async def ok():
            return None

        _run(ok())

    @pytest.mark.parametrize(
        "error,code",
        [
            (ValidationError("bad input"), 1),
            (NotFoundError("missing"), 1),
            (UpstreamError("provider down"), 2),
        ],
    )
    def test_error_exit_codes(self, error, code):
        async def fail():
            raise error

        with pytest.raises(typer.Exit) as exc_info:
            _run(fail())
        assert exc_info.value.exit_code == code
