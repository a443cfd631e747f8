import logging
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import APIKeyHeader

from tee_jobs.api.deps import Runtime
from tee_jobs.db.models import User

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

async def get_current_user(
    runtime: Runtime,
    api_key: str = Security(API_KEY_HEADER)
) -> User:
    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")

    user = await runtime.users.find_by_api_key(api_key)

    if not user:
        logger.info("Rejected request with unknown API key")
        raise HTTPException(status_code=403, detail="Invalid API Key")

    return user

CurrentUser = Annotated[User, Depends(get_current_user)]
