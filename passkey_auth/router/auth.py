"""
Passkey Auth Router

Registration and authentication ceremony endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError

from ..config import Settings
from ..db.sessions import SessionRecord
from ..errors import AuthError, InvalidUsername
from ..helpers import to_timestamp
from ..orchestrator import AuthOrchestrator, get_orchestrator
from ..schema.challenge import CeremonyOptions
from ..schema.login import LoginRequest, LoginResponse
from ..schema.register import RegisterBeginRequest, RegisterRequest, RegisterResponse

router = APIRouter()


def as_http_error(err: AuthError, loc: str = "username") -> Exception:
    """
    Translate an AuthError into the exception FastAPI renders.

    Username problems are reported like any other request validation
    failure; every other rejection carries its kind and next action.
    """
    if isinstance(err, InvalidUsername):
        return RequestValidationError(
            errors=[
                {
                    "loc": ["body", loc],
                    "msg": message,
                    "type": "value_error",
                }
                for message in err.errors
            ]
        )
    return HTTPException(status_code=err.status_code, detail=err.to_detail())


def transport_credentials(request: Request, settings: Settings) -> tuple[Optional[str], Optional[str]]:
    """
    Returns the (cookie session id, bearer token) a request carries
    """
    cookie = request.cookies.get(settings.session_cookie_name)
    bearer = None
    authorization = request.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        bearer = value.strip()
    return cookie, bearer


def set_session_cookie(response: Response, settings: Settings, session: SessionRecord) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=session.session_id,
        max_age=settings.session_ttl,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )


@router.post("/register/begin", description="Get Challenge for User Registration")
async def register_begin(
    request: RegisterBeginRequest,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> CeremonyOptions:
    """
    Begins registration of a username.

    Returns:
        CeremonyOptions

    Raises:
        RequestValidationError, HTTPException
    """
    try:
        begin = await orchestrator.begin_registration(request.username)
    except AuthError as err:
        raise as_http_error(err) from err
    return CeremonyOptions(publicKey=begin.options, challengeToken=begin.challenge_token)


@router.post("/register/complete", description="Respond to challenge for User Registration")
async def register_complete(
    registration_request: RegisterRequest,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> RegisterResponse:
    """
    Register a passkey via RegisterRequest model attestation, and open a session.

    Raises:
        HTTPException
    """
    try:
        outcome = await orchestrator.complete_registration(
            registration_request.username,
            registration_request.credential,
            registration_request.challengeToken,
        )
    except AuthError as err:
        raise as_http_error(err) from err

    session = outcome.session
    if session is not None:
        set_session_cookie(response, orchestrator.settings, session)
    return RegisterResponse(
        verified=outcome.verified,
        credentialId=outcome.credential_id,
        username=outcome.username,
        sessionToken=session.token if session is not None else None,
        expiresAt=to_timestamp(session.expires_at) if session is not None else None,
        alreadyRegistered=outcome.already_registered,
        message=outcome.message,
    )


@router.post("/authenticate/begin", description="Get Challenge for Login")
async def authenticate_begin(
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> CeremonyOptions:
    """
    Generate Authentication Options for a discoverable-credential login.
    """
    try:
        begin = await orchestrator.begin_authentication()
    except AuthError as err:
        raise as_http_error(err) from err
    return CeremonyOptions(publicKey=begin.options, challengeToken=begin.challenge_token)


@router.post("/authenticate/complete", description="Respond to challenge for Login")
async def authenticate_complete(
    assertion_request: LoginRequest,
    response: Response,
    orchestrator: AuthOrchestrator = Depends(get_orchestrator),
) -> LoginResponse:
    """
    Authenticate Passkey assertion response via LoginRequest model, and open a session.
    """
    try:
        outcome = await orchestrator.complete_authentication(
            assertion_request.credential,
            assertion_request.challengeToken,
        )
    except AuthError as err:
        raise as_http_error(err) from err

    set_session_cookie(response, orchestrator.settings, outcome.session)
    return LoginResponse(
        verified=outcome.verified,
        username=outcome.username,
        sessionToken=outcome.session.token,
        expiresAt=to_timestamp(outcome.session.expires_at),
    )
