import logging
from anyio import to_thread
from app.config import get_catalog_file
from app.reimbursement_database import SessionLocal
from app.services.catalog_importer import import_catalog

logger = logging.getLogger(__name__)


def _import_configured_catalog():
    db = SessionLocal()
    try:
        return import_catalog(db, path=get_catalog_file())
    finally:
        db.close()


async def import_catalog_at_startup():
    """
    Runs the reference catalog import once when the API boots, off the event loop.
    A failed import is logged and the API still starts on the existing catalog.
    """
    try:
        run = await to_thread.run_sync(_import_configured_catalog)
    except Exception:
        logger.exception("Startup catalog import failed, serving with the existing catalog")
        return None
    logger.info("Startup catalog import finished: %s new reference medications", run.written_count)
    return run
