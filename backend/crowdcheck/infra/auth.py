"""Authentication helpers for FastAPI endpoints.

Session and identity management live outside this service. Upstream gateways
forward the resolved identity as headers; in development the same headers can be
set by hand from local tools.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Header, HTTPException, status

from crowdcheck.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()
	handle: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return role in self.roles


def _parse_roles(raw: Optional[str]) -> Tuple[str, ...]:
	if not raw:
		return ()
	return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
	x_forwarded_user: Optional[str] = Header(default=None, alias="X-Forwarded-User"),
	x_forwarded_roles: Optional[str] = Header(default=None, alias="X-Forwarded-Roles"),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	Gateway-forwarded identity headers are always honoured. The plain X-User-*
	headers are only accepted in dev.
	"""
	if x_forwarded_user and x_forwarded_user.strip():
		return AuthenticatedUser(id=x_forwarded_user.strip(), roles=_parse_roles(x_forwarded_roles))

	if settings.is_dev() and x_user_id and x_user_id.strip():
		return AuthenticatedUser(id=x_user_id.strip(), roles=_parse_roles(x_user_roles))

	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthenticated")
