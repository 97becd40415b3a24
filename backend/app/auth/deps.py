"""FastAPI dependencies for identifying who drives the wizard.

Dependencies:
  get_optional_user_id  → user id from a valid bearer token, else None
  get_session_id        → anonymous session id from cookie or header
  get_session_context   → SessionContext(user_id?, session_id?)
  require_user_id       → user id or 401
"""

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from app.auth.jwt import decode_token
from app.config import settings
from app.middleware.exceptions import AuthenticationRequiredError
from app.services.session import SessionContext

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


# ── Core identity dependencies ──────────────────────────────

async def get_optional_user_id(
    token: str | None = Depends(oauth2_scheme),
) -> str | None:
    """Return the `sub` claim of a valid access token.

    A missing token means anonymous.  A present but invalid or expired
    token is rejected rather than silently downgraded, so a client never
    writes signed-in progress into its anonymous session by accident.
    """
    if not token:
        return None
    payload = decode_token(token)
    user_id: str | None = payload.get("sub")
    if not user_id or payload.get("type") != "access":
        raise AuthenticationRequiredError("Invalid or expired token")
    return user_id


def get_session_id(request: Request) -> str | None:
    session_id = (
        request.cookies.get(settings.anonymous_session_cookie)
        or request.headers.get(settings.anonymous_session_header)
    )
    return session_id or None


async def get_session_context(
    user_id: str | None = Depends(get_optional_user_id),
    session_id: str | None = Depends(get_session_id),
) -> SessionContext:
    return SessionContext(user_id=user_id, session_id=session_id)


async def require_user_id(
    user_id: str | None = Depends(get_optional_user_id),
) -> str:
    if not user_id:
        raise AuthenticationRequiredError()
    return user_id
