"""Bearer-token identity and role gates.

Tokens are issued by the sign-in provider; this service only verifies them.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from eventbook.errors import ForbiddenError, UnauthorizedError
from eventbook.settings import Settings, get_settings


class Role(str, Enum):
    USER = 'USER'
    VALIDATOR = 'VALIDATOR'
    ADMIN = 'ADMIN'


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: Role


def create_access_token(
    user_id: str, role: Role, settings: Settings, expires_in: timedelta | None = None
) -> str:
    now = datetime.now(timezone.utc)
    if expires_in is None:
        expires_in = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        'sub': user_id,
        'role': role.value,
        'iat': now,
        'exp': now + expires_in,
    }
    return jwt.encode(
        payload, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM
    )


def decode_access_token(token: str, settings: Settings) -> CurrentUser:
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY.get_secret_value(),
            algorithms=[settings.ALGORITHM],
            options={'require': ['sub', 'exp']},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError('Token has expired')
    except jwt.PyJWTError:
        raise UnauthorizedError('Invalid token')

    try:
        role = Role(payload.get('role', Role.USER.value))
    except ValueError:
        raise UnauthorizedError('Invalid token')
    return CurrentUser(id=str(payload['sub']), role=role)


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> CurrentUser:
    if credentials is None or credentials.scheme.lower() != 'bearer':
        raise UnauthorizedError()
    return decode_access_token(credentials.credentials, settings)


def require_roles(*roles: Role):
    def dependency(
        user: Annotated[CurrentUser, Depends(get_current_user)],
    ) -> CurrentUser:
        if user.role not in roles:
            raise ForbiddenError()
        return user

    return dependency


CurrentUserDep = Annotated[CurrentUser, Depends(get_current_user)]
ValidatorDep = Annotated[CurrentUser, Depends(require_roles(Role.VALIDATOR, Role.ADMIN))]
AdminDep = Annotated[CurrentUser, Depends(require_roles(Role.ADMIN))]
