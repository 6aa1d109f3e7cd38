# src/clinic_backend/token_client.py

import logging
import typing

import httpx
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from .exceptions import ProviderCommunicationError, ProviderDataError
from .providers import OAuthProvider

logger = logging.getLogger(__name__)

EXCHANGE_FAILED = "Failed to exchange OAuth code"
VERIFY_FAILED = "Failed to verify ID token"


class TokenResponse(BaseModel):
    id_token: str


class IdentityClaims(BaseModel):
    subject: str
    email: str
    name: typing.Optional[str] = None
    picture: typing.Optional[str] = None


def _describe_http_error(e: httpx.HTTPError) -> str:
    if isinstance(e, httpx.HTTPStatusError):
        body = e.response.text[:200]
        return f"{e.response.status_code} from provider: {body}"
    return str(e) or e.__class__.__name__


def _claims_from_payload(payload: typing.Any) -> IdentityClaims:
    if not isinstance(payload, dict) or not payload.get("email"):
        raise ProviderDataError(f"{VERIFY_FAILED}: response has no email claim")
    try:
        return IdentityClaims(
            subject=str(payload.get("sub") or ""),
            email=str(payload["email"]),
            name=payload.get("name"),
            picture=payload.get("picture"),
        )
    except ValidationError as e:
        raise ProviderDataError(f"{VERIFY_FAILED}: unexpected claim types: {e.error_count()} error(s)") from e


class TokenExchangeClient:
    """
    Server-to-server calls to one identity provider: the authorization code
    exchange and identity token verification. No retries; every failure is
    raised to the caller.

    ``verification`` selects how identity tokens are checked: ``"introspection"``
    asks the provider's token-info endpoint, ``"jwks"`` validates the signature
    locally against the provider's published keys and needs ``audience``.
    """

    def __init__(
            self,
            provider: OAuthProvider,
            timeout: float = 5.0,
            verification: str = "introspection",
            audience: typing.Optional[str] = None,
            transport: typing.Optional[httpx.AsyncBaseTransport] = None,
    ):
        if verification not in ("introspection", "jwks"):
            raise ValueError(f"Unsupported identity token verification: {verification}")
        self.provider = provider
        self.timeout = timeout
        self.verification = verification
        self.audience = audience
        self._transport = transport
        self._jwks_cache: typing.Dict[str, typing.Dict] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def exchange_code(
            self, code: str, client_id: str, client_secret: str, redirect_uri: str
    ) -> TokenResponse:
        form = {
            "code": code,
            "client_id": client_id,
            "client_secret": client_secret,
            "redirect_uri": redirect_uri,
            "grant_type": "authorization_code",
        }
        async with self._client() as client:
            try:
                response = await client.post(
                    self.provider.token_endpoint,
                    data=form,
                    headers={"Accept": "application/json"},
                )
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("Token exchange with %s failed: %s", self.provider.name, _describe_http_error(e))
                raise ProviderCommunicationError(f"{EXCHANGE_FAILED}: {_describe_http_error(e)}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderDataError(f"{EXCHANGE_FAILED}: response is not JSON") from e
        if not isinstance(payload, dict) or not payload.get("id_token"):
            raise ProviderDataError(f"{EXCHANGE_FAILED}: response has no id_token")
        id_token = payload["id_token"]
        if not isinstance(id_token, str):
            raise ProviderDataError(f"{EXCHANGE_FAILED}: id_token is not a string")
        return TokenResponse(id_token=id_token)

    async def verify_identity_token(self, id_token: str) -> IdentityClaims:
        if self.verification == "jwks":
            return await self._verify_with_jwks(id_token)
        return await self._verify_with_introspection(id_token)

    async def _verify_with_introspection(self, id_token: str) -> IdentityClaims:
        async with self._client() as client:
            try:
                response = await client.get(self.provider.tokeninfo_endpoint, params={"id_token": id_token})
                response.raise_for_status()
            except httpx.HTTPError as e:
                logger.error("Identity token introspection at %s failed: %s",
                             self.provider.name, _describe_http_error(e))
                raise ProviderCommunicationError(f"{VERIFY_FAILED}: {_describe_http_error(e)}") from e
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderDataError(f"{VERIFY_FAILED}: response is not JSON") from e
        return _claims_from_payload(payload)

    # --- Local signature verification ---

    async def _get_jwks(self) -> typing.Dict:
        jwks_uri = self.provider.jwks_uri
        if not self._jwks_cache.get(jwks_uri):
            async with self._client() as client:
                try:
                    response = await client.get(jwks_uri)
                    response.raise_for_status()
                    self._jwks_cache[jwks_uri] = response.json()
                except (httpx.HTTPError, ValueError) as e:
                    logger.error("Error fetching JWKS from %s: %s", jwks_uri, e)
                    raise ProviderCommunicationError(f"{VERIFY_FAILED}: could not retrieve signing keys") from e
        return self._jwks_cache[jwks_uri]

    async def _get_signing_key(self, id_token: str) -> typing.Dict:
        try:
            unverified_header = jwt.get_unverified_header(id_token)
        except JWTError as e:
            raise ProviderDataError(f"{VERIFY_FAILED}: invalid token header: {e}") from e
        kid = unverified_header.get("kid")
        if not kid:
            raise ProviderDataError(f"{VERIFY_FAILED}: token header missing 'kid'")

        jwks = await self._get_jwks()
        for key in jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        # Keys rotate; refetch once before giving up.
        self._jwks_cache.pop(self.provider.jwks_uri, None)
        jwks = await self._get_jwks()
        for key in jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        raise ProviderDataError(f"{VERIFY_FAILED}: no signing key for kid {kid}")

    async def _verify_with_jwks(self, id_token: str) -> IdentityClaims:
        if not self.audience:
            raise ProviderDataError(f"{VERIFY_FAILED}: no audience configured for local verification")
        signing_key = await self._get_signing_key(id_token)
        try:
            payload = jwt.decode(
                id_token,
                signing_key,
                algorithms=["RS256"],
                audience=self.audience,
                issuer=self.provider.issuers,
                options={"verify_at_hash": False},
            )
        except JWTError as e:
            raise ProviderDataError(f"{VERIFY_FAILED}: {e}") from e
        return _claims_from_payload(payload)
