from fastapi import Depends, Header, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from services.identity import Identity
from shared.enums import UserRole
from shared.utils import config, setup_logging

ALGORITHM = "HS256"

logger = setup_logging("auth")

# Optional auth scheme that allows anonymous sessions
oauth2_scheme_optional = OAuth2PasswordBearer(tokenUrl="/token", auto_error=False)


def _secret_key() -> str:
    return config.get("secret_key", "supersecret")


def create_access_token(data: dict[str, str]) -> str:
    """Create JWT access token."""
    return jwt.encode(data, _secret_key(), algorithm=ALGORITHM)


def identity_from_token(token: str) -> Identity:
    """Decode a provider-issued JWT into an Identity."""
    payload = jwt.decode(token, _secret_key(), algorithms=[ALGORITHM])
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id:
        raise JWTError("Token has no subject")
    try:
        role = UserRole(payload.get("role", UserRole.STUDENT.value))
    except ValueError as exc:
        raise JWTError(f"Unknown role: {payload.get('role')}") from exc
    return Identity(user_id=user_id, display_name=payload.get("name") or user_id, role=role)


def resolve_identity(
    token: str | None,
    session_id: str | None,
    display_name: str | None = None,
) -> Identity:
    """Prefer a bearer token, fall back to an anonymous session pseudo-id."""
    if token:
        try:
            return identity_from_token(token)
        except JWTError as exc:
            logger.warning(f"Rejected bearer token: {exc}")
            raise HTTPException(status_code=401, detail="Invalid token") from exc
    if session_id:
        return Identity.anonymous_viewer(session_id, display_name)
    raise HTTPException(status_code=401, detail="Not authenticated")


async def get_identity(
    token: str | None = Depends(oauth2_scheme_optional),
    x_session_id: str | None = Header(default=None, alias="X-Session-Id"),
    x_display_name: str | None = Header(default=None, alias="X-Display-Name"),
) -> Identity:
    """FastAPI dependency resolving the caller's identity."""
    return resolve_identity(token, x_session_id, x_display_name)
