# src/clinic_backend/main.py

import asyncio
import contextlib
import logging
import typing

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from .config import Settings, get_settings
from .exceptions import LoginFlowError
from .log import configure_logging
from .login_flow import LoginFlowController, build_token_clients, current_user
from .providers import PROVIDERS
from .schemas import (
    AuthUrlResponse,
    CallbackRequest,
    HealthResponse,
    LoginRequest,
    LogoutResponse,
    MessageResponse,
)
from .session_data import AuthenticatedUser, SessionData
from .sessions import SessionMiddleware, SessionStore, build_session_store, get_session, sweep_expired_sessions
from .token_client import TokenExchangeClient

logger = logging.getLogger(__name__)

NOT_LOGGED_IN_MESSAGE = "Please login (10001)"


# --- Dependencies ---
def app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_login_flow(request: Request) -> LoginFlowController:
    return request.app.state.login_flow


def parse_login_request(request: Request, settings: Settings = Depends(app_settings)) -> LoginRequest:
    return LoginRequest.from_request(request, settings)


def parse_callback_request(request: Request) -> CallbackRequest:
    return CallbackRequest.from_request(request)


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse()


# --- Authentication Routes ---
@router.get(
    "/oauth/{provider}/login",
    responses={200: {"model": AuthUrlResponse}, 302: {"description": "Redirect to the provider"}},
)
async def oauth_login(
        provider: str,
        login_request: LoginRequest = Depends(parse_login_request),
        session: SessionData = Depends(get_session),
        login_flow: LoginFlowController = Depends(get_login_flow),
):
    redirect = login_flow.initiate_login(session, provider, login_request)
    if redirect.want_json:
        return AuthUrlResponse(url=redirect.url)
    return RedirectResponse(url=redirect.url, status_code=status.HTTP_302_FOUND)


@router.get("/oauth/{provider}/callback", responses={302: {"description": "Redirect to the post-login target"}})
async def oauth_callback(
        provider: str,
        callback_request: CallbackRequest = Depends(parse_callback_request),
        session: SessionData = Depends(get_session),
        login_flow: LoginFlowController = Depends(get_login_flow),
):
    target = await login_flow.handle_callback(session, provider, callback_request)
    return RedirectResponse(url=target, status_code=status.HTTP_302_FOUND)


@router.get(
    "/auth/me",
    response_model=AuthenticatedUser,
    responses={401: {"model": MessageResponse}},
)
async def auth_me(session: SessionData = Depends(get_session)):
    user = current_user(session)
    if user is None:
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"message": NOT_LOGGED_IN_MESSAGE})
    return user


@router.get("/auth/logout", response_model=LogoutResponse)
async def auth_logout(session: SessionData = Depends(get_session)):
    was_logged_in = current_user(session) is not None
    session.invalidate()
    logger.info("Session invalidated (%s)", "user logged out" if was_logged_in else "no user in session")
    return LogoutResponse()


async def login_flow_error_handler(request: Request, exc: LoginFlowError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


# --- FastAPI App Setup ---
def create_app(
        settings: typing.Optional[Settings] = None,
        session_store: typing.Optional[SessionStore] = None,
        token_clients: typing.Optional[typing.Mapping[str, TokenExchangeClient]] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    if session_store is None:
        session_store = build_session_store(settings)
    if token_clients is None:
        token_clients = build_token_clients(settings)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("--- Clinic Records API Starting Up ---")
        for provider in PROVIDERS.values():
            prefix = provider.settings_prefix
            logger.info(
                "%s OAuth client configured: %s, callback URL: %s",
                provider.display_name,
                "Yes" if getattr(settings, f"{prefix}_CLIENT_ID", None) else "NO",
                getattr(settings, f"{prefix}_REDIRECT_URI", None) or "derived from each request",
            )
        logger.info("Session backend: %s", settings.SESSION_BACKEND)
        logger.info("Identity token verification: %s", settings.ID_TOKEN_VERIFICATION)

        sweep_task = None
        if settings.SESSION_SWEEP_INTERVAL_SECONDS > 0:
            sweep_task = asyncio.create_task(
                sweep_expired_sessions(session_store, settings.SESSION_SWEEP_INTERVAL_SECONDS)
            )
        try:
            yield
        finally:
            if sweep_task is not None:
                sweep_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweep_task
            await session_store.close()

    app = FastAPI(
        title="Clinic Records API",
        description="Clinic records backend: delegated login and server-side sessions.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_store = session_store
    app.state.login_flow = LoginFlowController(settings, token_clients)

    app.add_middleware(SessionMiddleware, store=session_store, settings=settings)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Set-Cookie"],
    )
    app.add_exception_handler(LoginFlowError, login_flow_error_handler)
    app.include_router(router, prefix=settings.API_PREFIX)
    return app


app = create_app()
