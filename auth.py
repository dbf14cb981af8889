from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import Settings
from errors import AuthenticationError

_bearer = HTTPBearer(auto_error=False)


def _serializer(settings: Settings) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.auth_secret, salt="access-token")


def issue_access_token(settings: Settings, user_id: str) -> str:
    """Sign a principal token; used by the login collaborator and tests."""
    return _serializer(settings).dumps({"user_id": user_id})


def read_access_token(settings: Settings, token: str) -> str:
    serializer = _serializer(settings)
    try:
        data = serializer.loads(token, max_age=settings.token_max_age_secs)
    except SignatureExpired as exc:
        raise AuthenticationError("Token expired", "token_expired") from exc
    except BadSignature as exc:
        raise AuthenticationError("Invalid token", "invalid_token") from exc

    user_id = data.get("user_id") if isinstance(data, dict) else None
    if not isinstance(user_id, str) or not user_id:
        raise AuthenticationError("Invalid user ID in token", "invalid_token")
    return user_id


def current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> str:
    if credentials is None:
        raise AuthenticationError(
            "Authorization header required", "missing_credentials"
        )
    return read_access_token(request.app.state.settings, credentials.credentials)
