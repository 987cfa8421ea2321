"""
API key authentication for the Latent Edge service.

Keys come from ``API_KEY_USER1`` .. ``API_KEY_USER5``.  Admin routes
(label ingestion, posterior updates) are limited to the users listed in
``ADMIN_API_USERS`` (comma separated, default ``user1``).
"""

import os
from typing import Dict, FrozenSet

from dotenv import load_dotenv
from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

load_dotenv()

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

MAX_API_USERS = 5


def get_valid_api_keys() -> Dict[str, str]:
    """Map each configured key to its user id (``user1`` .. ``user5``)."""
    keys = {}
    for i in range(1, MAX_API_USERS + 1):
        key = os.getenv(f"API_KEY_USER{i}")
        if key:
            keys[key] = f"user{i}"

    if not keys:
        # Development fallback (never use in production)
        if os.getenv("ENVIRONMENT") == "development":
            keys["dev-key-insecure"] = "dev_user"
        else:
            raise ValueError("No API keys configured! Set API_KEY_USER1 in environment")

    return keys


def get_admin_users() -> FrozenSet[str]:
    raw = os.getenv("ADMIN_API_USERS", "user1")
    return frozenset(u.strip() for u in raw.split(",") if u.strip())


VALID_API_KEYS = get_valid_api_keys()
ADMIN_USERS = get_admin_users()


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    """
    Resolve the ``X-API-Key`` header to a user id.

    Usage in FastAPI routes:
        @app.post("/api/simulate")
        async def simulate(req: SimulationRequest, user: str = Depends(verify_api_key)):
            ...
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    user = VALID_API_KEYS.get(api_key)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return user


async def verify_admin_api_key(user: str = Security(verify_api_key)) -> str:
    """Admin-only routes: writes to labels and posteriors."""
    if user not in ADMIN_USERS:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
