"""
API dependencies
"""
from fastapi import HTTPException, Request, status

from orderflow.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Service wiring built by the app lifespan"""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up"
        )
    return runtime
