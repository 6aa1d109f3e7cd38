# src/clinic_backend/auth_utils.py
import logging
import secrets
import typing
from urllib.parse import quote, urlencode, urlsplit

from .exceptions import RedirectValidationError
from .providers import OAuthProvider

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT = "/"
DEFAULT_PORTS = {"http": 80, "https": 443}


# --- State Token ---

def generate_state_token() -> str:
    """Unguessable single-use nonce binding the login leg to the callback."""
    return secrets.token_urlsafe(32)


def state_matches(expected: typing.Optional[str], received: typing.Optional[str]) -> bool:
    if not expected or received is None:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


# --- Redirect Target ---

def _origin_tuple(url: str) -> typing.Tuple[str, str, int]:
    try:
        parts = urlsplit(url.strip())
        scheme = parts.scheme.lower()
        host = parts.hostname
        port = parts.port
    except ValueError as e:
        raise RedirectValidationError(f"Unparseable URL: {e}") from e
    if scheme not in DEFAULT_PORTS:
        raise RedirectValidationError(f"Unsupported scheme: {scheme or '<none>'}")
    if not host:
        raise RedirectValidationError("URL has no host")
    return scheme, host.lower(), port if port is not None else DEFAULT_PORTS[scheme]


def validate_redirect_target(
        desired: str,
        request_origin: typing.Optional[str],
        allowed_origins: typing.Iterable[str],
) -> str:
    """
    Strict check: return ``desired`` if it is the default path or an absolute
    URL whose origin equals the caller's Origin header or an allow-listed
    origin. Raises RedirectValidationError otherwise.
    """
    if desired == DEFAULT_REDIRECT:
        return desired

    target = _origin_tuple(desired)
    candidates = list(allowed_origins)
    if request_origin:
        candidates.insert(0, request_origin)
    for candidate in candidates:
        try:
            if _origin_tuple(candidate) == target:
                return desired
        except RedirectValidationError:
            continue
    raise RedirectValidationError("Origin is not allowed")


def resolve_redirect_target(
        desired: typing.Optional[str],
        request_origin: typing.Optional[str],
        allowed_origins: typing.Iterable[str],
) -> str:
    """
    Lenient form used by the login leg. Bad input is never an error here:
    anything the strict check rejects becomes ``"/"``.
    """
    if desired is None or not desired.strip():
        return DEFAULT_REDIRECT
    try:
        return validate_redirect_target(desired, request_origin, allowed_origins)
    except RedirectValidationError as e:
        logger.warning("Downgrading post-login redirect to %s: %s", DEFAULT_REDIRECT, e)
        return DEFAULT_REDIRECT


# --- Authorization Request ---

def build_auth_url(provider: OAuthProvider, client_id: str, redirect_uri: str, state: str) -> str:
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(provider.scopes),
    }
    params.update(provider.authorization_params)
    params["state"] = state
    return f"{provider.authorization_endpoint}?{urlencode(params, quote_via=quote)}"
