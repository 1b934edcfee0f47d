from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Request, Response
from fastapi.responses import JSONResponse

from hedgeco.api.error_handling import error_response
from hedgeco.api.schemas import (
    AuthResponse,
    Envelope,
    HealthResponse,
    LoginRequest,
    LogoutAllResponse,
    LogoutResponse,
    ReadinessResponse,
    TokenRefreshRequest,
    UserResponse,
)
from hedgeco.service.errors import (
    AuthenticationError,
    RateLimitedError,
    SessionEndedError,
)
from hedgeco.service.health import PASS, UNHEALTHY
from hedgeco.service.runtime import Runtime
from hedgeco.service.session import AuthContext, SessionTokens

router = APIRouter()

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
REFRESH_COOKIE_PATH = "/api/auth"
LOGIN_WINDOW_SECONDS = 60

HEALTH_HEADERS = {"Cache-Control": "no-cache, no-store, must-revalidate"}


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    token = _bearer_token(authorization) or request.cookies.get(ACCESS_COOKIE)
    return await runtime.sessions.authenticate(token)


def _apply_session_cookies(response: Response, tokens: SessionTokens, *, secure: bool) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access.token,
        max_age=tokens.access.ttl_seconds,
        httponly=True,
        secure=secure,
        samesite="lax",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh.token,
        max_age=tokens.refresh.ttl_seconds,
        httponly=True,
        secure=secure,
        samesite="lax",
        path=REFRESH_COOKIE_PATH,
    )


def _clear_session_cookies(response: Response, *, secure: bool) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")
    response.delete_cookie(
        REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, secure=secure, httponly=True, samesite="lax"
    )


def _auth_payload(tokens: SessionTokens) -> AuthResponse:
    return AuthResponse(
        user_id=tokens.user_id,
        role=tokens.role,
        token_family=tokens.family,
        access_token_expires_at=tokens.access.expires_at,
        refresh_token_expires_at=tokens.refresh.expires_at,
    )


@router.post("/api/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response, runtime: Runtime = Depends(get_runtime)):
    """Exchange email and password for a new session.

    Sets the ``accessToken`` and ``refreshToken`` cookies. Rate limited per
    email address.

    Raises:
        401: Unknown email or wrong password
        403: Account exists but is not active
        429: Too many attempts for this email
    """
    limit = await runtime.rate_limiter.hit(
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        LOGIN_WINDOW_SECONDS,
    )
    if not limit.allowed:
        raise RateLimitedError(
            "too many login attempts", detail={"retry_after": limit.reset_seconds}
        )
    user = await runtime.credentials.authenticate(body.email, body.password)
    if user is None:
        raise AuthenticationError("invalid credentials")
    tokens = await runtime.sessions.login(user)
    _apply_session_cookies(response, tokens, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data=_auth_payload(tokens))


@router.post("/api/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = Body(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    """Rotate the refresh token and issue a fresh access token.

    Any refusal answers 401 with a uniform message and clears both cookies.
    """
    presented = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    try:
        tokens = await runtime.sessions.refresh(presented or "")
    except SessionEndedError as exc:
        failure = error_response(exc.status_code, exc.message, code=exc.error_code)
        _clear_session_cookies(failure, secure=runtime.settings.cookie_secure)
        return failure
    _apply_session_cookies(response, tokens, secure=runtime.settings.cookie_secure)
    return Envelope(status="ok", data=_auth_payload(tokens))


@router.post("/api/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = Body(default=None),
    runtime: Runtime = Depends(get_runtime),
):
    presented = request.cookies.get(REFRESH_COOKIE) or (body.refresh_token if body else None)
    await runtime.sessions.logout(presented)
    _clear_session_cookies(response, secure=runtime.settings.cookie_secure)
    return Envelope(
        status="ok",
        data=LogoutResponse(message="Logged out successfully"),
    )


@router.post("/api/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    response: Response,
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    revoked = await runtime.sessions.logout_everywhere(principal)
    _clear_session_cookies(response, secure=runtime.settings.cookie_secure)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(message="Logged out of all sessions", revoked=revoked),
    )


@router.get("/api/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(
    principal: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.sessions.current_user(principal)
    return Envelope(
        status="ok",
        data=UserResponse(id=user.id, email=user.email, role=user.role, status=user.status),
    )


@router.head("/health", tags=["health"])
async def health_head(runtime: Runtime = Depends(get_runtime)):
    """Cheap liveness ping: database only, no body."""
    check = await runtime.health.check_database()
    return Response(status_code=200 if check.status == PASS else 503, headers=HEALTH_HEADERS)


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health(verbose: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    """Overall status; ``?verbose=true`` adds per-check detail. Other values mean terse."""
    report = await runtime.health.report()
    status_code = 503 if report.status == UNHEALTHY else 200
    if (verbose or "").lower() == "true":
        payload = HealthResponse.model_validate(report.to_dict()).model_dump(mode="json")
    else:
        payload = HealthResponse(status=report.status).model_dump(mode="json", exclude_none=True)
    return JSONResponse(payload, status_code=status_code, headers=HEALTH_HEADERS)


@router.get("/health/ready", response_model=ReadinessResponse, tags=["health"])
async def readiness(runtime: Runtime = Depends(get_runtime)):
    report = await runtime.health.readiness()
    payload = ReadinessResponse.model_validate(report.to_dict()).model_dump(mode="json")
    return JSONResponse(
        payload, status_code=200 if report.ready else 503, headers=HEALTH_HEADERS
    )
