"""Client for the third-party rewards credit card API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, TypeVar
from urllib.parse import quote

import httpx
from pydantic import TypeAdapter, ValidationError

from ..config import Settings
from ..errors import (
    DecodingError,
    InvalidInputError,
    InvalidResponseError,
    TransportError,
)
from ..models import ApiCard, ApiCardDetail, ApiCardImage, ApiSearchResult

logger = logging.getLogger(__name__)

M = TypeVar("M")

_CARDS_ADAPTER = TypeAdapter(list[ApiCard])
_DETAIL_ADAPTER = TypeAdapter(list[ApiCardDetail])
_SEARCH_ADAPTER = TypeAdapter(list[ApiSearchResult])
_IMAGE_LIST_ADAPTER = TypeAdapter(list[ApiCardImage])


class RemoteCatalogClient:
    """Thin wrapper around the rewards card HTTP API."""

    CARDS_PATH = "/cards"
    DETAIL_PATH = "/creditcard-detail-bycard/{key}"
    SEARCH_PATH = "/creditcard-detail-namesearch/{term}"
    IMAGE_PATH = "/creditcard-card-image/{key}"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._max_retries = settings.remote_max_retries
        self._backoff = settings.retry_backoff_seconds

    def _headers(self) -> dict[str, str]:
        api_key = (self._settings.rewards_api_key or "").strip()
        if not api_key:
            # Treated like the API rejecting the request so callers degrade.
            raise InvalidResponseError(
                "Rewards API key is not configured", status_code=401
            )
        return {
            "x-rapidapi-key": api_key,
            "x-rapidapi-host": self._settings.rewards_api_host,
        }

    def _api_url(self, path: str) -> str:
        return f"{str(self._settings.rewards_api_url).rstrip('/')}{path}"

    async def _get(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        description: str,
    ) -> httpx.Response:
        """Issue a GET, retrying transport errors and 5xx responses."""

        attempt = 0
        while True:
            try:
                response = await self._client.get(url, headers=headers)
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._backoff * (2 ** (attempt - 1))
                    logger.info(
                        "Transient error fetching %s (%s). Retrying in %.1fs",
                        description,
                        exc.__class__.__name__,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise TransportError(f"Request for {description} failed: {exc}") from exc

            if 500 <= response.status_code < 600 and attempt < self._max_retries:
                attempt += 1
                backoff = self._backoff * (2 ** (attempt - 1))
                logger.info(
                    "Server error %s fetching %s. Retrying in %.1fs",
                    response.status_code,
                    description,
                    backoff,
                )
                await asyncio.sleep(backoff)
                continue

            if not response.is_success:
                raise InvalidResponseError(
                    f"Request for {description} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            return response

    async def _get_json(self, path: str, *, description: str) -> Any:
        response = await self._get(
            self._api_url(path), headers=self._headers(), description=description
        )
        try:
            return response.json()
        except ValueError as exc:
            raise DecodingError(f"Response for {description} was not valid JSON") from exc

    @staticmethod
    def _decode(adapter: TypeAdapter[M], payload: Any, *, description: str) -> M:
        try:
            return adapter.validate_python(payload)
        except ValidationError as exc:
            raise DecodingError(
                f"Response for {description} did not match the expected shape: "
                f"{exc.error_count()} error(s)"
            ) from exc

    @staticmethod
    def _require_key(card_key: str) -> str:
        cleaned = (card_key or "").strip()
        if not cleaned:
            raise InvalidInputError("Card key must not be empty")
        return cleaned

    async def fetch_cards(self) -> list[ApiCard]:
        """Return the basic card listing."""

        payload = await self._get_json(self.CARDS_PATH, description="card list")
        return self._decode(_CARDS_ADAPTER, payload, description="card list")

    async def fetch_card_detail(self, card_key: str) -> list[ApiCardDetail]:
        """Return the detail array for a card; usually one element, possibly none."""

        key = self._require_key(card_key)
        description = f"detail of {key}"
        payload = await self._get_json(
            self.DETAIL_PATH.format(key=quote(key, safe="")), description=description
        )
        return self._decode(_DETAIL_ADAPTER, payload, description=description)

    async def search_cards(self, term: str) -> list[ApiSearchResult]:
        """Return cards whose names match ``term``."""

        cleaned = (term or "").strip()
        if not cleaned:
            raise InvalidInputError("Search term must not be empty")
        description = f"search {cleaned!r}"
        payload = await self._get_json(
            self.SEARCH_PATH.format(term=quote(cleaned, safe="")), description=description
        )
        return self._decode(_SEARCH_ADAPTER, payload, description=description)

    async def fetch_card_image_info(self, card_key: str) -> str | None:
        """Return the first non-empty image URL reported for a card."""

        key = self._require_key(card_key)
        description = f"image info of {key}"
        payload = await self._get_json(
            self.IMAGE_PATH.format(key=quote(key, safe="")), description=description
        )
        if isinstance(payload, list):
            records = self._decode(_IMAGE_LIST_ADAPTER, payload, description=description)
        elif isinstance(payload, dict):
            if not payload:
                return None
            records = [self._decode(TypeAdapter(ApiCardImage), payload, description=description)]
        else:
            raise DecodingError(f"Response for {description} was neither an array nor an object")

        for record in records:
            url = record.card_image_url.strip()
            if url:
                return url
        return None

    def resolve_image_url(self, url: str) -> str:
        """Prefix relative image paths with the configured image host."""

        cleaned = url.strip()
        if cleaned.startswith(("http://", "https://")):
            return cleaned
        base = str(self._settings.image_base_url).rstrip("/")
        return f"{base}/{cleaned.lstrip('/')}"

    async def download_image(self, url: str) -> bytes:
        """Download raw image bytes; auth headers are not forwarded."""

        if not (url or "").strip():
            raise InvalidInputError("Image URL must not be empty")
        resolved = self.resolve_image_url(url)
        response = await self._get(resolved, description=f"image {resolved}")
        if not response.content:
            raise DecodingError(f"Image at {resolved} was empty")
        return response.content
