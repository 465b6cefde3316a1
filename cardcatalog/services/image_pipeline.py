"""Tiered resolution of card artwork with a generated fallback."""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from ..errors import CatalogError, TransportError
from ..models import CardSummary, ImageRecord, ImageSource
from .image_cache import DiskImageCache, MemoryImageCache
from .image_database import ImageMappingDatabase
from .placeholder import generic_card, render_placeholder
from .remote_catalog import RemoteCatalogClient

logger = logging.getLogger(__name__)


class ImageTier(str, Enum):
    MEMORY = "memory"
    DISK = "disk"
    MAPPING = "mapping"
    REMOTE = "remote"
    PLACEHOLDER = "placeholder"


@dataclass(slots=True)
class CardImage:
    """Displayable PNG bytes and the tier that produced them."""

    card_id: str
    data: bytes
    tier: ImageTier
    content_type: str = "image/png"


def normalize_image(data: bytes) -> bytes | None:
    """Return ``data`` re-encoded as PNG, or ``None`` if it is not an image."""

    if not data:
        return None
    try:
        with Image.open(io.BytesIO(data)) as candidate:
            candidate.verify()
        with Image.open(io.BytesIO(data)) as image:
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA")
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return buffer.getvalue()


class ImageResolutionPipeline:
    """Resolve an image per card: memory, disk, mapping, remote, placeholder."""

    def __init__(
        self,
        remote: RemoteCatalogClient,
        mapping: ImageMappingDatabase,
        memory_cache: MemoryImageCache,
        disk_cache: DiskImageCache,
    ):
        self._remote = remote
        self._mapping = mapping
        self._memory = memory_cache
        self._disk = disk_cache

    @property
    def mapping(self) -> ImageMappingDatabase:
        return self._mapping

    async def resolve_image(self, card_id: str, card: CardSummary | None = None) -> CardImage:
        """Always return some displayable image for ``card_id``."""

        key = (card_id or "").strip()
        if not key:
            data = await asyncio.to_thread(render_placeholder, card, card_id="")
            return CardImage(card_id="", data=data, tier=ImageTier.PLACEHOLDER)

        try:
            return await self._resolve(key, card)
        except Exception:
            logger.exception("Image resolution failed for %s, using placeholder", key)
            data = await asyncio.to_thread(render_placeholder, card, card_id=key)
            return CardImage(card_id=key, data=data, tier=ImageTier.PLACEHOLDER)

    async def _resolve(self, key: str, card: CardSummary | None) -> CardImage:
        cached = self._memory.get(key)
        if cached:
            return CardImage(card_id=key, data=cached, tier=ImageTier.MEMORY)

        cached = await self._disk.read(key)
        if cached:
            self._memory.put(key, cached)
            return CardImage(card_id=key, data=cached, tier=ImageTier.DISK)

        context = card if card is not None else generic_card(key)

        data = await self._from_mapping(key, card)
        if data:
            return CardImage(card_id=key, data=data, tier=ImageTier.MAPPING)

        record = await self._mapping.get(key)
        if record is None or record.source is not ImageSource.PENDING:
            data = await self._from_remote(key, context)
            if data:
                return CardImage(card_id=key, data=data, tier=ImageTier.REMOTE)
        else:
            logger.debug("Skipping remote image lookup for pending card %s", key)

        data = await asyncio.to_thread(render_placeholder, context, card_id=key)
        await self._write_back(key, data)
        return CardImage(card_id=key, data=data, tier=ImageTier.PLACEHOLDER)

    async def _write_back(self, key: str, data: bytes) -> Path | None:
        self._memory.put(key, data)
        return await self._disk.write(key, data)

    async def _download(self, url: str) -> bytes | None:
        """Fetch and validate image bytes; ``TransportError`` propagates."""

        try:
            raw = await self._remote.download_image(url)
        except TransportError:
            raise
        except CatalogError as exc:
            logger.info("Image download failed for %s: %s", url, exc)
            return None
        data = await asyncio.to_thread(normalize_image, raw)
        if data is None:
            logger.info("Downloaded bytes from %s are not a valid image", url)
        return data

    async def _load_record(self, record: ImageRecord) -> bytes | None:
        if record.local_path:
            local = await self._disk.read_path(record.local_path)
            if local:
                return local
        if not record.remote_url:
            return None
        try:
            return await self._download(record.remote_url)
        except TransportError as exc:
            logger.info("Image download failed for %s: %s", record.remote_url, exc)
            return None

    async def _from_mapping(self, key: str, card: CardSummary | None) -> bytes | None:
        record = await self._mapping.get(key)
        if record is not None and record.remote_url:
            data = await self._load_record(record)
            if data:
                path = await self._write_back(key, data)
                if path is not None:
                    await self._mapping.set_local_path(key, str(path))
                return data

        if card is None:
            return None
        match = await self._mapping.find_by_issuer_and_name(card.issuer, card.name)
        if match is None or match.card_id == key:
            return None
        data = await self._load_record(match)
        if not data:
            return None
        path = await self._write_back(key, data)
        await self._mapping.record_match(
            key,
            card.issuer,
            card.name,
            match.remote_url,
            str(path) if path is not None else None,
        )
        return data

    async def _from_remote(self, key: str, context: CardSummary) -> bytes | None:
        try:
            url = await self._remote.fetch_card_image_info(key)
        except CatalogError as exc:
            logger.info("Image metadata lookup failed for %s: %s", key, exc)
            return None

        if not url:
            await self._mapping.mark_pending(key, context.issuer, context.name)
            return None

        resolved_url = self._remote.resolve_image_url(url)
        try:
            data = await self._download(resolved_url)
        except TransportError as exc:
            # Unreachable hosts are retried on the next lookup.
            logger.info("Image download failed for %s: %s", resolved_url, exc)
            return None
        if not data:
            await self._mapping.mark_pending(key, context.issuer, context.name)
            return None

        path = await self._write_back(key, data)
        await self._mapping.add_image_from_api(
            key,
            context.issuer,
            context.name,
            resolved_url,
            str(path) if path is not None else None,
        )
        return data

    async def invalidate(self, card_id: str) -> None:
        """Forget cached bytes for a card and any pending marker."""

        key = (card_id or "").strip()
        if not key:
            return
        self._memory.remove(key)
        await self._disk.remove(key)
        record = await self._mapping.get(key)
        if record is not None and record.source is ImageSource.PENDING:
            await self._mapping.remove(key)

    async def clear(self) -> None:
        self._memory.clear()
        removed = await self._disk.clear()
        logger.info("Cleared image caches (%s files removed)", removed)
