import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI
from sqlalchemy.exc import ProgrammingError, OperationalError

from tee_jobs.settings import settings
from tee_jobs.api.v1.jobs import router as jobs_router
from tee_jobs.api.v1.admin import router as admin_router
from tee_jobs.api.v1.metrics import router as metrics_router
from tee_jobs.db.models import User
from tee_jobs.runtime import JobsRuntime

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

DEV_USER_ID = "local-dev"


async def bootstrap_dev_user(runtime: JobsRuntime, attempts: int = 10):
    """Ensures a local development user exists and logs its API key."""
    for i in range(attempts):
        try:
            async with runtime.session_factory() as session:
                user = await session.get(User, DEV_USER_ID)
                if not user:
                    new_key = f"dev-key-{str(uuid4())[:8]}"
                    session.add(User(id=DEV_USER_ID, name="Local Dev User", api_key=new_key))
                    await session.commit()
                    logger.info(f"BOOTSTRAP: Created '{DEV_USER_ID}' user. API KEY: {new_key}")
                elif user.api_key:
                    logger.info(f"BOOTSTRAP: Found '{DEV_USER_ID}' user. API KEY: {user.api_key}")
                else:
                    logger.info(f"BOOTSTRAP: Found '{DEV_USER_ID}' user (no API key).")
            return
        except (ProgrammingError, OperationalError):
            # Tables not migrated yet
            logger.warning(f"Bootstrap: tables not ready, retrying in 2s... ({i+1}/{attempts})")
            await asyncio.sleep(2)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = JobsRuntime.build()
    app.state.runtime = runtime

    await bootstrap_dev_user(runtime)
    await runtime.start()

    yield

    await runtime.stop()

app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(jobs_router, prefix="/api/v1/jobs", tags=["jobs"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"])
app.include_router(metrics_router, tags=["metrics"])

@app.get("/health")
async def health():
    return {"status": "ok"}
