import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from lapi_mirror.api.cache import router as cache_router
from lapi_mirror.api.health import router as health_router
from lapi_mirror.api.system import router as system_router
from lapi_mirror.core.config import get_settings
from lapi_mirror.core.container import get_refresh_scheduler, get_sync_engine, get_upstream_client
from lapi_mirror.core.logging import setup_logging

settings = get_settings()
setup_logging(settings.log_level)


async def _warm_cache() -> None:
    client = get_upstream_client()
    if client.has_credentials():
        await client.login()
    await get_sync_engine().initialize_cache()


@asynccontextmanager
async def _lifespan(_: FastAPI):
    scheduler = get_refresh_scheduler()
    warm_task = asyncio.create_task(_warm_cache(), name="lapi-mirror-warmup")
    if settings.scheduler_enabled:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        warm_task.cancel()
        with suppress(asyncio.CancelledError):
            await warm_task
        await get_sync_engine().aclose()


app = FastAPI(
    title=settings.app_name,
    version="0.3.0",
    description="Local read-through mirror of upstream alerts and decisions.",
    lifespan=_lifespan,
)

app.include_router(health_router)
app.include_router(cache_router)
app.include_router(system_router)


@app.get("/")
def root() -> dict[str, str]:
    return {"message": "LAPI mirror is running."}
