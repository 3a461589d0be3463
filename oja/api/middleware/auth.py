import hmac

from fastapi import HTTPException, Request, status


async def require_client_token(request: Request) -> None:
    """Dependency: require the shared client token.

    The token is sent as a header: X-Assistant-Token. When no token is
    configured the API is open (it binds to localhost by default).
    """
    expected = request.app.state.config_manager.config.api.token
    if not expected:
        return

    token = request.headers.get("X-Assistant-Token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Assistant token required.",
        )
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid assistant token.",
        )
