from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from crm_automation.core import config
from crm_automation.db.redis_client import redis_client
from crm_automation.db.session import async_session, init_models
from crm_automation.routers import automation
from crm_automation.services.automation_system import AutomationSystem

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()
    system = AutomationSystem(async_session, redis=redis_client)
    app.state.automation = system
    if config.AUTOMATION_ENABLED:
        system.start()
    else:
        logger.info("Automation processor disabled (AUTOMATION_ENABLED=false)")
    try:
        yield
    finally:
        await system.stop()
        await redis_client.aclose()


app = FastAPI(
    title="CRM Automation Engine",
    version="1.0.0",
    lifespan=lifespan,
)

# --- Register Routers ---
app.include_router(automation.router)    # /api/v1/automations/*


# --- Root health check ---
@app.get("/")
async def root():
    return {"message": "CRM Automation Engine is running"}
