# app.py
import logging
from pathlib import Path
import asyncpg
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from routers.session_router import router as session_router
from routers.location_router import router as location_router
from routers.profile_router import router as profile_router

from config import (
    get_avatar_config,
    get_db_config,
    get_ip_geolocation_url,
    get_location_cache_dir,
    get_log_level,
    get_ssl_context,
    get_sync_settings,
)
from encryption import get_key
from helpers.avatar_cache import AvatarResolver
from helpers.change_feed import ChangeFeed
from helpers.location_cache import LocationCache
from helpers.profile_store import ProfileStore, init_db
from services.geo_source import IpLocator
from services.profile_reconciler import ProfileReconciler
from services.session import SessionManager

logging.basicConfig(
    level=get_log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Nearby Presence Server")


def build_sessions(store: ProfileStore, change_feed: ChangeFeed) -> SessionManager:
    """Wire the presence engine from environment configuration."""
    settings = get_sync_settings()
    reconciler = ProfileReconciler(
        store,
        retry_attempts=settings.profile_retry_attempts,
        retry_delay_seconds=settings.profile_retry_delay_seconds,
    )
    location_cache = LocationCache(
        Path(get_location_cache_dir()),
        ttl_seconds=settings.location_cache_ttl_seconds,
    )
    return SessionManager(
        store,
        change_feed,
        reconciler,
        settings,
        IpLocator(get_ip_geolocation_url(), timeout=settings.geo_timeout_seconds),
        location_cache,
        avatars=AvatarResolver(**get_avatar_config()),
    )


@app.on_event("startup")
async def startup():
    # Create a connection pool and store it in app.state
    db_config = get_db_config()
    ssl_context = get_ssl_context()
    app.state.db_pool = await asyncpg.create_pool(**db_config, ssl=ssl_context)

    # Derive the location cache key before any session needs it
    await run_in_threadpool(get_key)

    change_feed = ChangeFeed()
    await init_db(app.state.db_pool, change_feed.channel)
    await change_feed.start(app.state.db_pool)

    app.state.change_feed = change_feed
    app.state.store = ProfileStore(app.state.db_pool)
    app.state.sessions = build_sessions(app.state.store, change_feed)
    logger.info("Presence engine ready")


@app.on_event("shutdown")
async def shutdown():
    # Mark every signed-in user offline before the pool goes away
    await app.state.sessions.close_all()
    await app.state.change_feed.stop()
    await app.state.db_pool.close()


app.include_router(session_router, prefix="/api/session")
app.include_router(location_router, prefix="/api")
app.include_router(profile_router, prefix="/api/profile")
