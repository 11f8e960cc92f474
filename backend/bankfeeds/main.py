from fastapi import FastAPI
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from bankfeeds.config import get_settings
from bankfeeds.database import engine, Base
from bankfeeds.integrations.registry import validate_registry
from bankfeeds.routes import api_router

logger = logging.getLogger(__name__)

settings = get_settings()

# Fail at startup, not at the first sync, if a provider has no adapter.
validate_registry()

if settings.auto_create_tables:
    logger.warning("AUTO_CREATE_TABLES is enabled; creating tables via SQLAlchemy metadata.")
    Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Bank Feeds API",
    description="Bank and mobile-money statement sync for the ERP ledger",
    version="0.1.0",
    docs_url="/docs" if settings.api_docs_enabled else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)

app.include_router(api_router, prefix="/api")


@app.get("/health")
def health():
    return {"status": "healthy"}
