import pytest

from clinic_backend import auth_utils
from clinic_backend.config import DEFAULT_DEV_REDIRECT_ORIGINS
from clinic_backend.exceptions import RedirectValidationError
from clinic_backend.providers import GOOGLE

from _helpers import query_of

ORIGIN = "https://app.example.com"


def test_state_tokens_are_unique_and_url_safe():
    tokens = {auth_utils.generate_state_token() for _ in range(200)}

    assert len(tokens) == 200
    for token in tokens:
        assert len(token) >= 40
        assert all(c.isalnum() or c in "-_" for c in token)


@pytest.mark.parametrize(
    "expected,received,matches",
    [
        ("abc", "abc", True),
        ("abc", "ABC", False),
        ("abc", "abcd", False),
        ("abc", "", False),
        ("abc", None, False),
        (None, "abc", False),
        ("", "", False),
        ("abc", "ábc", False),
    ],
)
def test_state_matches(expected, received, matches):
    assert auth_utils.state_matches(expected, received) is matches


@pytest.mark.parametrize(
    "desired",
    [
        "/",
        "https://app.example.com",
        "https://app.example.com/patients?id=3#notes",
        "https://APP.example.com:443/dashboard",
    ],
)
def test_validate_accepts_default_and_matching_origin(desired):
    assert auth_utils.validate_redirect_target(desired, ORIGIN, []) == desired


@pytest.mark.parametrize(
    "desired",
    [
        "https://app.example.com:8443/",
        "http://app.example.com/",
        "https://app.example.com.evil.net/",
        "https://evil.net/?next=https://app.example.com",
        "/patients",
        "ftp://app.example.com/",
        "http://[::1",
    ],
)
def test_validate_rejects_other_origins(desired):
    with pytest.raises(RedirectValidationError):
        auth_utils.validate_redirect_target(desired, ORIGIN, [])


def test_validate_uses_allow_list_when_origin_header_missing():
    target = "http://127.0.0.1:5173/reports"

    assert auth_utils.validate_redirect_target(target, None, DEFAULT_DEV_REDIRECT_ORIGINS) == target


def test_validate_ignores_malformed_origin_header():
    with pytest.raises(RedirectValidationError):
        auth_utils.validate_redirect_target("https://app.example.com/", "null", [])


@pytest.mark.parametrize("desired", [None, "", "  ", "https://evil.net/", "not a url"])
def test_resolve_never_raises_and_falls_back_to_root(desired):
    assert auth_utils.resolve_redirect_target(desired, ORIGIN, DEFAULT_DEV_REDIRECT_ORIGINS) == "/"


def test_resolve_logs_downgrade(caplog):
    with caplog.at_level("WARNING", logger="clinic_backend.auth_utils"):
        auth_utils.resolve_redirect_target("https://evil.net/", ORIGIN, [])

    assert "Downgrading post-login redirect" in caplog.text


def test_build_auth_url_carries_all_parameters():
    url = auth_utils.build_auth_url(GOOGLE, "cid", "https://clinic.example.com/api/oauth/google/callback", "n0nce")

    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert "scope=openid%20email%20profile" in url
    assert query_of(url) == {
        "client_id": "cid",
        "redirect_uri": "https://clinic.example.com/api/oauth/google/callback",
        "response_type": "code",
        "scope": "openid email profile",
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": "n0nce",
    }
