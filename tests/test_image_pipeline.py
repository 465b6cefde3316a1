"""Tests for the image caches, mapping database and resolution pipeline."""

from __future__ import annotations

import io
from pathlib import Path
from typing import cast

import pytest
from PIL import Image

from cardcatalog.database import Database
from cardcatalog.errors import TransportError
from cardcatalog.models import CardSummary, ImageSource
from cardcatalog.services.image_cache import DiskImageCache, MemoryImageCache
from cardcatalog.services.image_database import ImageMappingDatabase
from cardcatalog.services.image_pipeline import (
    ImageResolutionPipeline,
    ImageTier,
    normalize_image,
)
from cardcatalog.services.placeholder import (
    CARD_HEIGHT,
    CARD_WIDTH,
    base_color,
    render_placeholder,
)
from cardcatalog.services.remote_catalog import RemoteCatalogClient
from cardcatalog.services.store import KeyValueStore


def png_bytes(color: str = "red") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 5), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeImageRemote:
    """Scripted image metadata and downloads keyed by card id and URL."""

    def __init__(
        self,
        urls: dict[str, str | None] | None = None,
        downloads: dict[str, bytes] | None = None,
    ) -> None:
        self.urls = urls or {}
        self.downloads = downloads or {}
        self.info_calls: list[str] = []
        self.download_calls: list[str] = []
        self.info_error: Exception | None = None

    async def fetch_card_image_info(self, card_key: str) -> str | None:
        self.info_calls.append(card_key)
        if self.info_error is not None:
            raise self.info_error
        return self.urls.get(card_key)

    def resolve_image_url(self, url: str) -> str:
        if url.startswith("http"):
            return url
        return f"https://img.example.com/{url.lstrip('/')}"

    async def download_image(self, url: str) -> bytes:
        self.download_calls.append(url)
        if url not in self.downloads:
            raise TransportError(f"no route to {url}")
        return self.downloads[url]


async def open_mapping(database_url: str) -> tuple[Database, ImageMappingDatabase]:
    database = Database(database_url)
    await database.create_all()
    return database, ImageMappingDatabase(KeyValueStore(database.session_factory))


def build_pipeline(
    remote: FakeImageRemote,
    mapping: ImageMappingDatabase,
    directory: Path,
    memory: MemoryImageCache | None = None,
) -> ImageResolutionPipeline:
    return ImageResolutionPipeline(
        cast(RemoteCatalogClient, remote),
        mapping,
        memory or MemoryImageCache(),
        DiskImageCache(directory),
    )


def test_memory_cache_evicts_least_recently_used() -> None:
    cache = MemoryImageCache(max_items=2, max_bytes=1024)
    cache.put("a", b"a")
    cache.put("b", b"b")
    assert cache.get("a") == b"a"

    cache.put("c", b"c")

    assert "a" in cache
    assert "b" not in cache
    assert "c" in cache
    assert len(cache) == 2


def test_memory_cache_respects_byte_budget() -> None:
    cache = MemoryImageCache(max_items=10, max_bytes=10)
    cache.put("a", b"x" * 6)
    cache.put("b", b"y" * 6)
    cache.put("huge", b"z" * 11)

    assert "a" not in cache
    assert "b" in cache
    assert "huge" not in cache
    assert cache.total_bytes == 6


@pytest.mark.anyio("asyncio")
async def test_disk_cache_sanitizes_keys(tmp_path: Path) -> None:
    cache = DiskImageCache(tmp_path / "images")

    path = await cache.write("https://cdn.example.com/a?b=c", b"data")

    assert path == tmp_path / "images" / "https___cdn.example.com_a_b_c.png"
    assert await cache.read("https://cdn.example.com/a?b=c") == b"data"
    assert await cache.clear() == 1
    assert await cache.read("https://cdn.example.com/a?b=c") is None


def test_normalize_image_rejects_garbage() -> None:
    assert normalize_image(b"not an image") is None
    assert normalize_image(b"") is None
    normalized = normalize_image(png_bytes())
    assert normalized is not None
    assert normalized.startswith(b"\x89PNG")


def test_placeholder_is_card_sized_png() -> None:
    data = render_placeholder(card_id="chase-sapphire-reserve")

    with Image.open(io.BytesIO(data)) as image:
        assert image.format == "PNG"
        assert image.size == (CARD_WIDTH, CARD_HEIGHT)
        assert image.mode == "RGBA"
        # Rounded corners are transparent.
        assert image.getpixel((0, 0))[3] == 0


def test_placeholder_colour_prefers_category_then_issuer() -> None:
    travel = CardSummary(id="x", name="X", issuer="Chase", category="Travel")
    chase = CardSummary(id="x", name="X", issuer="Chase", category="Unknown")
    unknown = CardSummary(id="x", name="X", issuer="Nobody", category="Unknown")

    assert base_color(travel) == (0.2, 0.4, 0.8)
    assert base_color(chase) == (0.0, 0.4, 0.8)
    assert base_color(unknown) == base_color(unknown.model_copy())


@pytest.mark.anyio("asyncio")
async def test_manual_mapping_wins_over_api(database_url: str) -> None:
    database, mapping = await open_mapping(database_url)

    await mapping.add_manual_mapping("x", "Bank", "X", "https://manual.example.com/x.png")
    replaced = await mapping.add_image_from_api("x", "Bank", "X", "https://api.example.com/x.png")
    matched = await mapping.record_match("x", "Bank", "X", "https://other.example.com/x.png")

    record = await mapping.get("x")
    assert replaced is False
    assert matched is False
    assert record is not None
    assert record.source is ImageSource.MANUAL
    assert record.remote_url == "https://manual.example.com/x.png"
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_mapping_seeds_defaults_and_matches_substrings(database_url: str) -> None:
    database, mapping = await open_mapping(database_url)

    records = await mapping.records()
    match = await mapping.find_by_issuer_and_name("Chase", "Sapphire")
    missing = await mapping.find_by_issuer_and_name("Chase", "Slate")

    assert len(records) == 8
    assert records["amex-gold"].source is ImageSource.DEFAULT
    assert match is not None
    assert match.card_id == "chase-sapphire-preferred"
    assert missing is None
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_empty_card_id_returns_uncached_placeholder(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    memory = MemoryImageCache()
    remote = FakeImageRemote()
    pipeline = build_pipeline(remote, mapping, tmp_path / "images", memory)

    image = await pipeline.resolve_image("")

    assert image.tier is ImageTier.PLACEHOLDER
    assert image.data.startswith(b"\x89PNG")
    assert len(memory) == 0
    assert remote.info_calls == []
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_remote_image_is_written_back_to_every_tier(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    remote = FakeImageRemote(
        urls={"citi-custom": "/cards/citi-custom.png"},
        downloads={"https://img.example.com/cards/citi-custom.png": png_bytes()},
    )
    card = CardSummary(id="citi-custom", name="Custom", issuer="Citi")
    pipeline = build_pipeline(remote, mapping, tmp_path / "images")

    first = await pipeline.resolve_image("citi-custom", card)
    second = await pipeline.resolve_image("citi-custom", card)

    assert first.tier is ImageTier.REMOTE
    assert second.tier is ImageTier.MEMORY
    assert second.data == first.data
    assert (tmp_path / "images" / "citi-custom.png").is_file()
    record = await mapping.get("citi-custom")
    assert record is not None
    assert record.source is ImageSource.API
    assert record.remote_url == "https://img.example.com/cards/citi-custom.png"

    restarted = build_pipeline(remote, mapping, tmp_path / "images")
    third = await restarted.resolve_image("citi-custom", card)

    assert third.tier is ImageTier.DISK
    assert remote.info_calls == ["citi-custom"]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_default_mapping_is_downloaded(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    records = await mapping.records()
    url = records["amex-gold"].remote_url
    remote = FakeImageRemote(downloads={url: png_bytes("gold")})
    pipeline = build_pipeline(remote, mapping, tmp_path / "images")

    image = await pipeline.resolve_image("amex-gold")

    assert image.tier is ImageTier.MAPPING
    assert remote.info_calls == []
    record = await mapping.get("amex-gold")
    assert record is not None
    assert record.local_path == str(tmp_path / "images" / "amex-gold.png")
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_issuer_and_name_match_is_recorded(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    records = await mapping.records()
    url = records["chase-sapphire-preferred"].remote_url
    remote = FakeImageRemote(downloads={url: png_bytes("blue")})
    card = CardSummary(id="chase-csp-2024", name="Sapphire", issuer="Chase")
    pipeline = build_pipeline(remote, mapping, tmp_path / "images")

    image = await pipeline.resolve_image("chase-csp-2024", card)

    assert image.tier is ImageTier.MAPPING
    assert remote.info_calls == []
    record = await mapping.get("chase-csp-2024")
    assert record is not None
    assert record.source is ImageSource.MATCHED
    assert record.remote_url == url
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_missing_remote_image_marks_card_pending(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    remote = FakeImageRemote(urls={"local-plain": None})
    card = CardSummary(id="local-plain", name="Plain", issuer="Local Bank")
    pipeline = build_pipeline(remote, mapping, tmp_path / "first")

    image = await pipeline.resolve_image("local-plain", card)

    assert image.tier is ImageTier.PLACEHOLDER
    record = await mapping.get("local-plain")
    assert record is not None
    assert record.source is ImageSource.PENDING

    # A fresh cache on another directory still skips the remote lookup.
    other = build_pipeline(remote, mapping, tmp_path / "second")
    again = await other.resolve_image("local-plain", card)

    assert again.tier is ImageTier.PLACEHOLDER
    assert remote.info_calls == ["local-plain"]

    await other.invalidate("local-plain")
    assert await mapping.get("local-plain") is None
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_invalid_download_marks_card_pending(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    remote = FakeImageRemote(
        urls={"bad-art": "https://cdn.example.com/bad.png"},
        downloads={"https://cdn.example.com/bad.png": b"<html>not found</html>"},
    )
    pipeline = build_pipeline(remote, mapping, tmp_path / "images")

    image = await pipeline.resolve_image("bad-art")

    assert image.tier is ImageTier.PLACEHOLDER
    record = await mapping.get("bad-art")
    assert record is not None
    assert record.source is ImageSource.PENDING
    assert record.issuer == "Bad"
    assert record.name == "Bad Art"
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_transport_failure_does_not_mark_pending(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    remote = FakeImageRemote()
    remote.info_error = TransportError("offline")
    pipeline = build_pipeline(remote, mapping, tmp_path / "images")

    image = await pipeline.resolve_image("offline-card")

    assert image.tier is ImageTier.PLACEHOLDER
    assert await mapping.get("offline-card") is None
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_unreachable_download_does_not_mark_pending(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    url = "https://cdn.example.com/later.png"
    remote = FakeImageRemote(urls={"later-card": url})
    pipeline = build_pipeline(remote, mapping, tmp_path / "images")

    first = await pipeline.resolve_image("later-card")

    assert first.tier is ImageTier.PLACEHOLDER
    assert remote.download_calls == [url]
    assert await mapping.get("later-card") is None

    remote.downloads[url] = png_bytes("blue")
    await pipeline.invalidate("later-card")
    second = await pipeline.resolve_image("later-card")

    assert second.tier is ImageTier.REMOTE
    assert remote.info_calls == ["later-card", "later-card"]
    await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_clear_keeps_the_mapping(database_url: str, tmp_path: Path) -> None:
    database, mapping = await open_mapping(database_url)
    memory = MemoryImageCache()
    remote = FakeImageRemote(
        urls={"citi-custom": "https://cdn.example.com/c.png"},
        downloads={"https://cdn.example.com/c.png": png_bytes()},
    )
    pipeline = build_pipeline(remote, mapping, tmp_path / "images", memory)
    await pipeline.resolve_image("citi-custom")

    await pipeline.clear()

    assert len(memory) == 0
    assert not (tmp_path / "images" / "citi-custom.png").exists()
    assert await mapping.get("citi-custom") is not None
    await database.dispose()
