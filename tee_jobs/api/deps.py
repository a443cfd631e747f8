from typing import Annotated

from fastapi import Depends, Request

from tee_jobs.runtime import JobsRuntime


def get_runtime(request: Request) -> JobsRuntime:
    return request.app.state.runtime

# Dependency for the per-process runtime built in the lifespan
Runtime = Annotated[JobsRuntime, Depends(get_runtime)]
