"""Session dependencies that scope every ledger request to one account."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import is_admin_email
from services.session_token import decode_session_token


bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return bool(self.email) and is_admin_email(self.email)


def ensure_user_scope(session_user_id: str, requested_user_id: Optional[str]) -> str:
    """A caller may only read or spend its own ledger."""
    if requested_user_id and requested_user_id != session_user_id:
        raise HTTPException(status_code=403, detail="Ledger access is limited to the signed-in account.")
    return session_user_id


async def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    email = str(claims.get("email") or "").strip().lower()
    return AuthContext(user_id=str(claims["sub"]), email=email or None)


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Operator routes: a valid session whose email is listed in ADMIN_EMAILS."""
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Administrator access required.")
    return auth
