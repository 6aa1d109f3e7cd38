# src/clinic_backend/providers.py

import typing

from pydantic import BaseModel

from .config import Settings
from .exceptions import ConfigurationError, UnknownProviderError


class OAuthProvider(BaseModel):
    name: str
    display_name: str
    settings_prefix: str
    authorization_endpoint: str
    token_endpoint: str
    tokeninfo_endpoint: str
    jwks_uri: str
    issuers: typing.List[str]
    scopes: typing.List[str] = ["openid", "email", "profile"]
    # Extra query parameters sent on every authorization request
    authorization_params: typing.Dict[str, str] = {}


class ProviderCredentials(BaseModel):
    client_id: str
    client_secret: typing.Optional[str] = None
    redirect_uri: str


GOOGLE = OAuthProvider(
    name="google",
    display_name="Google",
    settings_prefix="GOOGLE",
    authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
    token_endpoint="https://oauth2.googleapis.com/token",
    tokeninfo_endpoint="https://oauth2.googleapis.com/tokeninfo",
    jwks_uri="https://www.googleapis.com/oauth2/v3/certs",
    issuers=["https://accounts.google.com", "accounts.google.com"],
    authorization_params={
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
    },
)

PROVIDERS: typing.Dict[str, OAuthProvider] = {GOOGLE.name: GOOGLE}


def get_provider(name: str) -> OAuthProvider:
    provider = PROVIDERS.get(name)
    if provider is None:
        raise UnknownProviderError(f"Unknown OAuth provider: {name}")
    return provider


def _setting(settings: Settings, provider: OAuthProvider, field: str) -> typing.Optional[str]:
    value = getattr(settings, f"{provider.settings_prefix}_{field}", None)
    if value is None or not str(value).strip():
        return None
    return str(value).strip()


def resolve_callback_url(
        settings: Settings, provider: OAuthProvider, scheme: str, port: int
) -> str:
    """Configured absolute callback URL, else one synthesized for localhost."""
    configured = _setting(settings, provider, "REDIRECT_URI")
    if configured:
        return configured
    return f"{scheme}://localhost:{port}{settings.API_PREFIX}/oauth/{provider.name}/callback"


def resolve_credentials(
        settings: Settings,
        provider: OAuthProvider,
        scheme: str,
        port: int,
        require_secret: bool = False,
) -> ProviderCredentials:
    client_id = _setting(settings, provider, "CLIENT_ID")
    client_secret = _setting(settings, provider, "CLIENT_SECRET")
    if client_id is None or (require_secret and client_secret is None):
        raise ConfigurationError(f"{provider.display_name} OAuth not configured")
    return ProviderCredentials(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=resolve_callback_url(settings, provider, scheme, port),
    )
