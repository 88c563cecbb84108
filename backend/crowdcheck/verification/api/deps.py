"""Request-scoped dependencies for the verification routers."""

from __future__ import annotations

from fastapi import Depends

from crowdcheck.infra.auth import AuthenticatedUser, get_current_user
from crowdcheck.verification.domain.models import Identity, Role


def identity_from_user(user: AuthenticatedUser) -> Identity:
    if user.has_role("admin"):
        role = Role.ADMIN
    elif user.has_role("moderator"):
        role = Role.MODERATOR
    else:
        role = Role.USER
    return Identity(user_id=user.id, role=role)


async def get_identity(user: AuthenticatedUser = Depends(get_current_user)) -> Identity:
    return identity_from_user(user)
