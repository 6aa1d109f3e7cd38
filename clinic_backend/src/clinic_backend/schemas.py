# src/clinic_backend/schemas.py

from typing import Optional

from fastapi import Request
from pydantic import BaseModel

from .auth_utils import DEFAULT_PORTS, resolve_redirect_target
from .config import Settings

_TRUE_FLAGS = {"1", "true"}


def _request_port(request: Request) -> int:
    port = request.url.port
    if port is None:
        port = DEFAULT_PORTS.get(request.url.scheme, 80)
    return port


class LoginRequest(BaseModel):
    """Parsed query of the login leg. ``redirect_target`` is already validated."""
    redirect_target: str
    want_json: bool
    scheme: str
    port: int

    @classmethod
    def from_request(cls, request: Request, settings: Settings) -> "LoginRequest":
        params = request.query_params
        # Older clients send the post-login URL as ``state``.
        desired = params.get("to")
        if desired is None:
            desired = params.get("state")
        json_flag = (params.get("json") or "").strip().lower()
        accept = request.headers.get("accept") or ""
        return cls(
            redirect_target=resolve_redirect_target(
                desired,
                request.headers.get("origin"),
                settings.DEV_REDIRECT_ORIGINS,
            ),
            want_json=json_flag in _TRUE_FLAGS or "application/json" in accept,
            scheme=request.url.scheme,
            port=_request_port(request),
        )


class CallbackRequest(BaseModel):
    code: str = ""
    state: str = ""
    error: Optional[str] = None
    error_description: Optional[str] = None
    scheme: str
    port: int

    @classmethod
    def from_request(cls, request: Request) -> "CallbackRequest":
        params = request.query_params
        return cls(
            code=params.get("code") or "",
            state=params.get("state") or "",
            error=params.get("error"),
            error_description=params.get("error_description"),
            scheme=request.url.scheme,
            port=_request_port(request),
        )


# --- Response bodies ---

class AuthUrlResponse(BaseModel):
    url: str


class LogoutResponse(BaseModel):
    ok: bool = True


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
