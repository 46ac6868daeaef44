"""FastAPI dependencies: current user and shared scheduling components."""

from __future__ import annotations

import uuid

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_os.core.database import get_db
from clinic_os.core.models import User
from clinic_os.core.repository import UserRepository
from clinic_os.scheduling.service import SchedulingService

USER_HEADER = "X-User-Id"


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the acting user from the ``X-User-Id`` header.

    Identity is established upstream; this only loads the mirrored user row
    so role checks have something to work with.
    """
    raw = request.headers.get(USER_HEADER)
    if not raw:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {USER_HEADER}")

    user = await UserRepository(db).get_by_id(user_id)
    if user is None or not user.is_active:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def get_scheduling_service(request: Request) -> SchedulingService:
    service = getattr(request.app.state, "scheduling_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Scheduling service not initialized")
    return service
