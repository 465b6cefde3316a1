"""Local mapping from card ids to known artwork URLs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from pydantic import ValidationError

from ..errors import PersistenceError
from ..models import ImageRecord, ImageSource
from ..utils import utcnow
from .store import IMAGE_MAPPING_KEY, KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MAPPINGS: tuple[tuple[str, str, str, str], ...] = (
    (
        "chase-sapphire-preferred",
        "Chase",
        "Sapphire Preferred",
        "https://creditcards.chase.com/sites/default/files/images/cards/card_legacy_csp.png",
    ),
    (
        "chase-sapphire-reserve",
        "Chase",
        "Sapphire Reserve",
        "https://creditcards.chase.com/sites/default/files/images/cards/card_legacy_csr.png",
    ),
    (
        "amex-gold",
        "American Express",
        "Gold Card",
        "https://www.nerdwallet.com/cdn-cgi/image/width=1800,quality=85/cdn/images/marketplace/credit_cards/cc-amex-gold-nw-image.png",
    ),
    (
        "amex-platinum",
        "American Express",
        "Platinum Card",
        "https://www.nerdwallet.com/cdn-cgi/image/width=1800,quality=85/cdn/images/marketplace/credit_cards/cc-amex-platinum-nw-image.png",
    ),
    (
        "chase-freedom-unlimited",
        "Chase",
        "Freedom Unlimited",
        "https://creditcards.chase.com/sites/default/files/images/cards/card_legacy_cfu.png",
    ),
    (
        "capital-one-venture",
        "Capital One",
        "Venture",
        "https://www.nerdwallet.com/cdn-cgi/image/width=1800,quality=85/cdn/images/marketplace/credit_cards/60b02e2116a0e4d1b3e9fc44/cc-cap1-venture-rewards-nw-image.png",
    ),
    (
        "discover-it",
        "Discover",
        "Discover it",
        "https://www.nerdwallet.com/cdn-cgi/image/width=1800,quality=85/cdn/images/marketplace/credit_cards/cc-discover-it-cash-back-nw-image.png",
    ),
    (
        "citi-double-cash",
        "Citi",
        "Double Cash",
        "https://www.nerdwallet.com/cdn-cgi/image/width=1800,quality=85/cdn/images/marketplace/credit_cards/cc-citi-double-cash-nw-image.png",
    ),
)


class ImageMappingDatabase:
    """Card id to :class:`ImageRecord` map persisted as a single blob."""

    def __init__(self, store: KeyValueStore):
        self._store = store
        self._records: dict[str, ImageRecord] = {}
        self._loaded = False
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        try:
            payload = await self._store.get(IMAGE_MAPPING_KEY)
        except PersistenceError as exc:
            logger.warning("Image mapping unavailable, starting empty: %s", exc)
            payload = None

        records: dict[str, ImageRecord] = {}
        if isinstance(payload, dict):
            for card_id, raw in payload.items():
                try:
                    records[card_id] = ImageRecord.model_validate(raw)
                except ValidationError:
                    logger.warning("Dropping malformed image record for %s", card_id)
        self._records = records
        self._loaded = True
        if not self._records:
            self._seed_defaults()
            await self._save()

    def _seed_defaults(self) -> None:
        now = utcnow()
        for card_id, issuer, name, url in DEFAULT_IMAGE_MAPPINGS:
            self._records[card_id] = ImageRecord(
                card_id=card_id,
                issuer=issuer,
                name=name,
                remote_url=url,
                last_updated=now,
                source=ImageSource.DEFAULT,
            )

    async def _save(self) -> None:
        payload: dict[str, Any] = {
            card_id: record.model_dump(mode="json")
            for card_id, record in self._records.items()
        }
        try:
            await self._store.set(IMAGE_MAPPING_KEY, payload)
        except PersistenceError as exc:
            logger.warning("Failed to persist image mapping: %s", exc)

    async def records(self) -> dict[str, ImageRecord]:
        async with self._lock:
            await self._ensure_loaded()
            return dict(self._records)

    async def get(self, card_id: str) -> ImageRecord | None:
        async with self._lock:
            await self._ensure_loaded()
            return self._records.get(card_id)

    async def find_by_issuer_and_name(self, issuer: str, name: str) -> ImageRecord | None:
        """Return the first record with a URL whose issuer-name text contains ours."""

        search_key = f"{issuer.lower()}-{name.lower()}"
        async with self._lock:
            await self._ensure_loaded()
            for record in self._records.values():
                if record.remote_url and search_key in record.lookup_text:
                    return record
        return None

    async def add_manual_mapping(
        self, card_id: str, issuer: str, name: str, remote_url: str
    ) -> ImageRecord:
        """Store a curated mapping that API lookups may not replace."""

        record = ImageRecord(
            card_id=card_id,
            issuer=issuer,
            name=name,
            remote_url=remote_url,
            source=ImageSource.MANUAL,
        )
        async with self._lock:
            await self._ensure_loaded()
            self._records[card_id] = record
            await self._save()
        return record

    async def _write_unless_manual(self, record: ImageRecord) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            existing = self._records.get(record.card_id)
            if existing is not None and existing.source is ImageSource.MANUAL:
                return False
            self._records[record.card_id] = record
            await self._save()
            return True

    async def add_image_from_api(
        self,
        card_id: str,
        issuer: str,
        name: str,
        remote_url: str,
        local_path: str | None = None,
    ) -> bool:
        """Record an API-provided URL; returns False when a manual record wins."""

        return await self._write_unless_manual(
            ImageRecord(
                card_id=card_id,
                issuer=issuer,
                name=name,
                remote_url=remote_url,
                local_path=local_path,
                source=ImageSource.API,
            )
        )

    async def record_match(
        self,
        card_id: str,
        issuer: str,
        name: str,
        remote_url: str,
        local_path: str | None = None,
    ) -> bool:
        return await self._write_unless_manual(
            ImageRecord(
                card_id=card_id,
                issuer=issuer,
                name=name,
                remote_url=remote_url,
                local_path=local_path,
                source=ImageSource.MATCHED,
            )
        )

    async def mark_pending(self, card_id: str, issuer: str, name: str) -> bool:
        """Remember that a card has no resolvable image; no-op if any record exists."""

        async with self._lock:
            await self._ensure_loaded()
            if card_id in self._records:
                return False
            self._records[card_id] = ImageRecord(
                card_id=card_id,
                issuer=issuer,
                name=name,
                source=ImageSource.PENDING,
            )
            await self._save()
            return True

    async def set_local_path(self, card_id: str, local_path: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            record = self._records.get(card_id)
            if record is None or record.local_path == local_path:
                return
            self._records[card_id] = record.model_copy(
                update={"local_path": local_path, "last_updated": utcnow()}
            )
            await self._save()

    async def remove(self, card_id: str) -> None:
        async with self._lock:
            await self._ensure_loaded()
            if self._records.pop(card_id, None) is not None:
                await self._save()

    async def clear(self) -> None:
        """Drop every record; defaults are re-seeded on next access."""

        async with self._lock:
            self._records = {}
            self._loaded = False
            try:
                await self._store.delete(IMAGE_MAPPING_KEY)
            except PersistenceError as exc:
                logger.warning("Failed to clear image mapping: %s", exc)
