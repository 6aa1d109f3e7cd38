# src/clinic_backend/login_flow.py

import logging
import typing

from pydantic import BaseModel

from . import auth_utils
from .config import Settings
from .exceptions import ConfigurationError, CsrfValidationError, InvalidCallbackError
from .providers import PROVIDERS, get_provider, resolve_credentials
from .schemas import CallbackRequest, LoginRequest
from .session_data import (
    OAUTH_REDIRECT_KEY,
    OAUTH_STATE_KEY,
    USER_KEY,
    AuthenticatedUser,
    SessionData,
)
from .token_client import TokenExchangeClient

logger = logging.getLogger(__name__)


class LoginRedirect(BaseModel):
    url: str
    want_json: bool


def build_token_clients(settings: Settings) -> typing.Dict[str, TokenExchangeClient]:
    return {
        name: TokenExchangeClient(
            provider,
            timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
            verification=settings.ID_TOKEN_VERIFICATION,
            audience=getattr(settings, f"{provider.settings_prefix}_CLIENT_ID", None),
        )
        for name, provider in PROVIDERS.items()
    }


class LoginFlowController:
    """
    Two-leg authorization code login.

    ANONYMOUS -> PENDING_AUTH after ``initiate_login`` stores a nonce and the
    post-login target in the session; PENDING_AUTH -> AUTHENTICATED after
    ``handle_callback`` verifies the nonce and the provider's identity token.
    Every operation receives the caller's session explicitly.

    The two legs fail in opposite directions: a bad redirect target is
    silently replaced by ``"/"``, while a bad state aborts the callback
    before any provider call.
    """

    def __init__(self, settings: Settings, token_clients: typing.Mapping[str, TokenExchangeClient]):
        self.settings = settings
        self.token_clients = token_clients

    def _token_client(self, provider_name: str) -> TokenExchangeClient:
        client = self.token_clients.get(provider_name)
        if client is None:
            raise ConfigurationError(f"No token client configured for provider {provider_name}")
        return client

    def initiate_login(
            self, session: SessionData, provider_name: str, request: LoginRequest
    ) -> LoginRedirect:
        provider = get_provider(provider_name)
        try:
            credentials = resolve_credentials(self.settings, provider, request.scheme, request.port)
        except ConfigurationError:
            logger.warning("Login requested for %s but the client id is not configured", provider.name)
            raise

        nonce = auth_utils.generate_state_token()
        session.set(OAUTH_STATE_KEY, nonce)
        session.set(OAUTH_REDIRECT_KEY, request.redirect_target)

        url = auth_utils.build_auth_url(provider, credentials.client_id, credentials.redirect_uri, nonce)
        logger.info(
            "Login initiated with %s (callback %s, post-login target %s)",
            provider.name, credentials.redirect_uri, request.redirect_target,
        )
        return LoginRedirect(url=url, want_json=request.want_json)

    async def handle_callback(
            self, session: SessionData, provider_name: str, request: CallbackRequest
    ) -> str:
        """Complete the login and return the post-login redirect target."""
        provider = get_provider(provider_name)

        # Pending state is single use whatever the outcome.
        expected_state = session.pop(OAUTH_STATE_KEY)
        redirect_target = session.pop(OAUTH_REDIRECT_KEY)

        if not auth_utils.state_matches(expected_state, request.state):
            logger.warning(
                "Rejected %s callback: %s",
                provider.name, "no pending login" if expected_state is None else "state mismatch",
            )
            raise CsrfValidationError("Invalid OAuth state")

        try:
            credentials = resolve_credentials(
                self.settings, provider, request.scheme, request.port, require_secret=True
            )
        except ConfigurationError:
            logger.warning("Callback for %s but client id or secret is not configured", provider.name)
            raise

        if not request.code:
            detail = "Missing authorization code"
            if request.error:
                detail = f"{detail}: {request.error}"
                if request.error_description:
                    detail = f"{detail} - {request.error_description}"
            raise InvalidCallbackError(detail)

        client = self._token_client(provider.name)
        tokens = await client.exchange_code(
            request.code, credentials.client_id, credentials.client_secret, credentials.redirect_uri
        )
        claims = await client.verify_identity_token(tokens.id_token)

        user = AuthenticatedUser(
            id=claims.subject,
            email=claims.email,
            name=claims.name or "",
            picture=claims.picture or "",
        )
        session.set(USER_KEY, user.model_dump())
        session.set_max_inactive_interval(self.settings.SESSION_AUTHENTICATED_MAX_INACTIVE_SECONDS)

        target = redirect_target or auth_utils.DEFAULT_REDIRECT
        logger.info("User %s logged in with %s, redirecting to %s", user.id, provider.name, target)
        return target


def current_user(session: SessionData) -> typing.Optional[AuthenticatedUser]:
    data = session.get(USER_KEY)
    if not data:
        return None
    return AuthenticatedUser.model_validate(data)
