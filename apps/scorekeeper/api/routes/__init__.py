"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, error mapping) lives here; every sub-router
imports what it needs from this package.
"""

import os
from typing import NoReturn

from fastapi import APIRouter, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)


# ---------------------------------------------------------------------------
# Shared error mapping
# ---------------------------------------------------------------------------
def raise_client_error(e: ValueError) -> NoReturn:
    """
    Re-raise a service ValueError as an HTTPException.

    Sharing errors carry their own status code (404, 403, 401, 409, 500);
    any other ValueError is a 400.
    """
    raise HTTPException(status_code=getattr(e, "status_code", 400), detail=str(e))


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from scorekeeper.api.routes.sharing import router as sharing_router  # noqa: E402
from scorekeeper.api.routes.matches import router as matches_router  # noqa: E402
from scorekeeper.api.routes.friends import router as friends_router  # noqa: E402

router = APIRouter()
router.include_router(sharing_router)
router.include_router(matches_router)
router.include_router(friends_router)
