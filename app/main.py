import asyncio
import contextlib
import logging
from fastapi import FastAPI

from app.config import get_log_level, import_catalog_on_startup
from app.router.batch import router as batch_router
from app.tasks import import_catalog_at_startup

logging.basicConfig(level=get_log_level(), format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Imports the reference catalog on startup when IMPORT_CATALOG_ON_STARTUP is set,
    and cancels the import if the app shuts down before it finishes.
    """
    task = None
    if import_catalog_on_startup():
        task = asyncio.create_task(import_catalog_at_startup())
    try:
        yield
    finally:
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


app = FastAPI(
    title="Claim Reimbursement Batch API",
    lifespan=lifespan,
)


app.include_router(batch_router, prefix="/api")
