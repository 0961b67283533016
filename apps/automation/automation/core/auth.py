from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from automation.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    def has_role(self, role: str) -> bool:
        return role in self.roles


def _anonymous() -> AuthUser:
    return AuthUser(sub="anonymous", roles=["guest"])


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return _anonymous()

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return _anonymous()

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(payload.get("sub", "anonymous")), roles=[str(role) for role in roles])


def require_role(role: str):
    """Dependency rejecting callers whose token does not grant ``role``."""

    async def dependency(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if not user.has_role(role):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {role}")
        return user

    return dependency
