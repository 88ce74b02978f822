"""
Passkey Session Router

Session status, refresh, logout and account endpoints. None of these run
a ceremony; each resolves the session from the cookie first and the
bearer token second.
"""

from fastapi import APIRouter, Depends, Request, Response

from ..errors import AuthError
from ..orchestrator import AuthOrchestrator, get_orchestrator, session_status
from ..schema.session import (
    CredentialList,
    LogoutResponse,
    Profile,
    SessionStatus,
    UsernameCheckRequest,
    UsernameCheckResponse,
)
from .auth import as_http_error, set_session_cookie, transport_credentials

router = APIRouter()


@router.get("/auth/status")
async def status(
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> SessionStatus:
    """
    Re-validates the session and re-advertises its expiry. Never extends it.
    """
    cookie, bearer = transport_credentials(request, orchestrator.settings)
    try:
        return await orchestrator.status(cookie, bearer)
    except AuthError as err:
        raise as_http_error(err) from err


@router.post("/auth/refresh")
async def refresh(
    request: Request,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> SessionStatus:
    """
    Extends the session to a full lifetime from now.
    """
    cookie, bearer = transport_credentials(request, orchestrator.settings)
    try:
        record = await orchestrator.refresh(cookie, bearer)
    except AuthError as err:
        raise as_http_error(err) from err
    set_session_cookie(response, orchestrator.settings, record)
    return session_status(record)


@router.post("/auth/logout")
async def logout(
    request: Request,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> LogoutResponse:
    cookie, bearer = transport_credentials(request, orchestrator.settings)
    try:
        result = await orchestrator.logout(cookie, bearer)
    except AuthError as err:
        raise as_http_error(err) from err
    response.delete_cookie(orchestrator.settings.session_cookie_name)
    return result


@router.get("/auth/me")
async def me(
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> Profile:
    cookie, bearer = transport_credentials(request, orchestrator.settings)
    try:
        return await orchestrator.profile(cookie, bearer)
    except AuthError as err:
        raise as_http_error(err) from err


@router.post("/check-username")
async def check_username(
    check: UsernameCheckRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> UsernameCheckResponse:
    try:
        return await orchestrator.check_username(check.username)
    except AuthError as err:
        raise as_http_error(err) from err


@router.get("/users/{username}/credentials")
async def credentials(
    username: str,
    request: Request,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> CredentialList:
    """
    Lists the authenticated user's own credentials.
    """
    cookie, bearer = transport_credentials(request, orchestrator.settings)
    try:
        return await orchestrator.list_credentials(username, cookie, bearer)
    except AuthError as err:
        raise as_http_error(err) from err
