"""Entry point for the FastAPI-powered card catalog service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import date
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import Settings, settings
from .database import Database
from .errors import CatalogError, InvalidInputError, NotFoundError
from .models import CardSummary, OwnedCard
from .services.card_detail import CardDetailService
from .services.catalog_cache import CatalogCacheManager, CatalogMemoryCache
from .services.image_cache import DiskImageCache, MemoryImageCache
from .services.image_database import ImageMappingDatabase
from .services.image_pipeline import ImageResolutionPipeline
from .services.operations import CatalogOperations
from .services.profiles import OwnedCardCollection, ProfileStateSynchronizer
from .services.remote_catalog import RemoteCatalogClient
from .services.store import KeyValueStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


def build_operations(
    config: Settings,
    http_client: httpx.AsyncClient,
    database: Database,
    *,
    background_prefetch: bool = True,
) -> CatalogOperations:
    """Wire every service together around one store and HTTP client."""

    store = KeyValueStore(database.session_factory)
    remote = RemoteCatalogClient(config, http_client)
    memory = CatalogMemoryCache()
    catalog = CatalogCacheManager(config, remote, store, memory)
    details = CardDetailService(config, remote, store, memory)
    images = ImageResolutionPipeline(
        remote,
        ImageMappingDatabase(store),
        MemoryImageCache(config.image_memory_items, config.image_memory_bytes),
        DiskImageCache(config.image_cache_dir),
    )
    return CatalogOperations(
        catalog,
        details,
        images,
        ProfileStateSynchronizer(store),
        OwnedCardCollection(store),
        background_prefetch=background_prefetch,
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    http_client = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            follow_redirects=True,
        )
    )
    database = Database(settings.database_url)
    await database.create_all()

    operations = build_operations(settings, http_client, database)
    app.state.operations = operations
    app.state.database = database
    await operations.start()

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await operations.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Cached credit card rewards catalog with per-profile card tracking",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def get_operations(app: FastAPI) -> CatalogOperations:
    operations = getattr(app.state, "operations", None)
    if not isinstance(operations, CatalogOperations):
        raise RuntimeError("Catalog operations not initialised")
    return operations


class ProfilePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    email: str = ""
    avatar: str | None = None


class CardStatusPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_active: bool = Field(alias="isActive")
    on: date | None = None


def _error_status(exc: CatalogError) -> int:
    if isinstance(exc, InvalidInputError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if exc.retryable:
        return 503
    return 500


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(CatalogError)
    async def _catalog_error_handler(_: Request, exc: CatalogError) -> JSONResponse:
        status = _error_status(exc)
        if status >= 500:
            logger.warning("Request failed with %s: %s", exc.__class__.__name__, exc)
        return JSONResponse(
            status_code=status,
            content={"detail": exc.message, "retryable": exc.retryable},
        )

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.get("/catalog")
    async def get_catalog() -> dict[str, Any]:
        view = await get_operations(fastapi_app).get_catalog()
        return view.to_payload()

    @fastapi_app.post("/catalog/refresh")
    async def refresh_catalog() -> dict[str, Any]:
        view = await get_operations(fastapi_app).force_refresh_catalog()
        return view.to_payload()

    @fastapi_app.get("/catalog/search")
    async def search_catalog(q: str = "") -> dict[str, Any]:
        cards = await get_operations(fastapi_app).search_by_term(q)
        return {"cards": [card.model_dump(mode="json") for card in cards]}

    @fastapi_app.get("/cards/{card_id}")
    async def get_card(card_id: str) -> dict[str, Any]:
        detail = await get_operations(fastapi_app).get_detail(card_id)
        return detail.model_dump(mode="json")

    @fastapi_app.get("/cards/{card_id}/image")
    async def get_card_image(card_id: str) -> Response:
        image = await get_operations(fastapi_app).resolve_image(card_id)
        return Response(
            content=image.data,
            media_type=image.content_type,
            headers={"X-Image-Tier": image.tier.value},
        )

    @fastapi_app.delete("/caches")
    async def clear_caches() -> dict[str, str]:
        await get_operations(fastapi_app).clear_all_caches()
        return {"status": "cleared"}

    @fastapi_app.get("/profiles")
    async def list_profiles() -> dict[str, Any]:
        profiles = await get_operations(fastapi_app).profiles.profiles()
        return {"profiles": [profile.model_dump(mode="json") for profile in profiles]}

    @fastapi_app.post("/profiles", status_code=201)
    async def create_profile(payload: ProfilePayload) -> dict[str, Any]:
        profile = await get_operations(fastapi_app).profiles.create_profile(
            payload.name, email=payload.email, avatar=payload.avatar
        )
        return profile.model_dump(mode="json")

    @fastapi_app.delete("/profiles/{profile_id}")
    async def delete_profile(profile_id: str) -> dict[str, Any]:
        active = await get_operations(fastapi_app).delete_profile(profile_id)
        return {"active": active.model_dump(mode="json")}

    @fastapi_app.post("/profiles/{profile_id}/switch")
    async def switch_profile(profile_id: str) -> dict[str, Any]:
        active = await get_operations(fastapi_app).switch_profile(profile_id)
        return active.model_dump(mode="json")

    @fastapi_app.post("/profiles/{profile_id}/activate")
    async def activate_profile(profile_id: str) -> dict[str, Any]:
        active = await get_operations(fastapi_app).set_profile_active(profile_id)
        return active.model_dump(mode="json")

    @fastapi_app.post("/profiles/active/favorites/{card_id}")
    async def toggle_favorite(card_id: str) -> dict[str, Any]:
        is_favorite = await get_operations(fastapi_app).profiles.toggle_favorite(card_id)
        return {"cardId": card_id, "favorite": is_favorite}

    @fastapi_app.post("/profiles/active/custom-cards", status_code=201)
    async def add_custom_card(card: CardSummary) -> dict[str, Any]:
        await get_operations(fastapi_app).profiles.add_custom_card(card)
        return card.model_dump(mode="json")

    @fastapi_app.get("/owned-cards")
    async def list_owned_cards() -> dict[str, Any]:
        owned = get_operations(fastapi_app).owned_cards
        return {"cards": [card.model_dump(mode="json") for card in owned.cards()]}

    @fastapi_app.get("/owned-cards/stats")
    async def owned_card_stats() -> dict[str, Any]:
        return get_operations(fastapi_app).owned_card_stats().to_payload()

    @fastapi_app.post("/owned-cards", status_code=201)
    async def add_owned_card(card: OwnedCard) -> dict[str, Any]:
        added = await get_operations(fastapi_app).add_owned_card(card)
        return added.model_dump(mode="json")

    @fastapi_app.put("/owned-cards/{card_id}")
    async def update_owned_card(card_id: str, card: OwnedCard) -> dict[str, Any]:
        updated = await get_operations(fastapi_app).update_owned_card(
            card.model_copy(update={"id": card_id})
        )
        return updated.model_dump(mode="json")

    @fastapi_app.post("/owned-cards/{card_id}/toggle-bonus")
    async def toggle_bonus(card_id: str) -> dict[str, Any]:
        card = await get_operations(fastapi_app).toggle_bonus_achieved(card_id)
        return card.model_dump(mode="json")

    @fastapi_app.post("/owned-cards/{card_id}/status")
    async def set_card_status(card_id: str, payload: CardStatusPayload) -> dict[str, Any]:
        card = await get_operations(fastapi_app).set_owned_card_active(
            card_id, payload.is_active, on=payload.on
        )
        return card.model_dump(mode="json")

    @fastapi_app.delete("/owned-cards/{card_id}", status_code=204)
    async def remove_owned_card(card_id: str) -> Response:
        await get_operations(fastapi_app).remove_owned_card(card_id)
        return Response(status_code=204)


app = create_app()
