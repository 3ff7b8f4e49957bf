import logging
import os
from typing import Iterable, Optional, Set

import jwt
from fastapi import HTTPException
from sqlmodel.ext.asyncio.session import AsyncSession
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from schedform.db import Organization, SessionFactory, User, get_session

logger = logging.getLogger("schedform.auth")

# roles allowed to change workspace setup and run maintenance
OPERATOR_ROLES = ("owner", "admin")


def require_role(request: Request, *roles: str) -> None:
    allowed = roles or OPERATOR_ROLES
    if getattr(request.state, "role", None) not in allowed:
        raise HTTPException(status_code=403, detail=f"Requires role: {', '.join(allowed)}")


async def provision_user(session: AsyncSession, user_id: str, email: Optional[str]) -> User:
    org = Organization(name=email or user_id, plan="free")
    session.add(org)
    await session.flush()
    user = User(id=user_id, email=email or "", organization_id=org.id, role="owner")
    session.add(user)
    await session.commit()
    logger.info("Provisioned organization %s for user %s", org.id, user_id)
    return user


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


class TenantAuthMiddleware(BaseHTTPMiddleware):
    """Resolves the operator and organization behind a bearer token.

    Respondent routes (``/public/...``) and docs are exempt. Users seen for
    the first time are provisioned as owner of a new organization.
    """

    def __init__(
        self,
        app,
        exempt_paths: Optional[Iterable[str]] = None,
        exempt_prefixes: Optional[Iterable[str]] = None,
        session_factory: SessionFactory = get_session,
    ):
        super().__init__(app)
        self.exempt_paths: Set[str] = set(exempt_paths or [])
        self.exempt_prefixes: Set[str] = set(exempt_prefixes or [])
        self.session_factory = session_factory
        self.jwt_secret = os.getenv("SUPABASE_JWT_SECRET")

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if (
            request.method == "OPTIONS"
            or path in self.exempt_paths
            or any(path.startswith(prefix) for prefix in self.exempt_prefixes)
        ):
            return await call_next(request)

        if not self.jwt_secret:
            return _error(500, "Auth secret not configured")

        auth_header = request.headers.get("Authorization") or ""
        if not auth_header.lower().startswith("bearer "):
            return _error(401, "Missing bearer token")

        token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return _error(401, "Missing bearer token")

        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError:
            return _error(401, "Invalid token")

        user_id = payload.get("sub") or payload.get("user_id")
        email = payload.get("email")

        if not user_id:
            return _error(401, "Token missing user identifier")

        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if not user:
                user = await provision_user(session, user_id, email)

        request.state.user_id = user_id
        request.state.org_id = user.organization_id
        request.state.role = user.role
        request.state.email = email
        request.state.jwt_payload = payload
        return await call_next(request)
