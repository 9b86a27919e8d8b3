import secrets
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from .settings import Settings, get_settings

# Tells FastAPI where to look for the token. Only the authoring routes use it;
# the assignment and exposure endpoints are called from storefronts and stay open.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def require_auth_token(
    token: Annotated[str, Depends(oauth2_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str:
    """
    Dependency that requires a Bearer token listed in ``TOKENS``.

    A missing Authorization header is rejected by ``oauth2_scheme`` itself
    with a 401.
    """
    if not token or not any(
        secrets.compare_digest(token, allowed) for allowed in settings.TOKENS
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token
