from __future__ import annotations

from ssogate.domain.models import STATUS_ACTIVE, STATUS_DISABLED, ArtifactKind, Group, User
from ssogate.services.sso.oidc_provider import build_code_challenge, scope_claims, verify_code_verifier
from ssogate.services.sso.urls import append_query_params, query_param, same_origin, url_origin
from ssogate.services.tickets.engine import audience_matches, generate_token


def _user() -> User:
    return User(
        id=9,
        tenant_id=1,
        username="alice",
        password_hash="x",
        email="alice@acme.test",
        display_name="Alice Example",
        groups=[
            Group(name="staff", status=STATUS_ACTIVE),
            Group(name="admins", status=STATUS_ACTIVE),
            Group(name="old", status=STATUS_DISABLED),
        ],
    )


def test_pkce_s256_matches_rfc7636_example() -> None:
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    challenge = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    assert build_code_challenge(verifier) == challenge
    assert verify_code_verifier(verifier, challenge, "S256")
    assert not verify_code_verifier("wrong", challenge, "S256")


def test_pkce_plain_and_unknown_methods() -> None:
    assert verify_code_verifier("abc", "abc", "plain")
    assert verify_code_verifier("abc", "abc", None)
    assert not verify_code_verifier("abc", "abc", "S512")


def test_scope_claims_follow_granted_scopes() -> None:
    user = _user()
    assert scope_claims(user, {"openid"}) == {}
    assert scope_claims(user, {"openid", "email"}) == {"email": "alice@acme.test"}
    profile = scope_claims(user, {"profile"})
    assert profile["preferred_username"] == "alice"
    assert profile["name"] == "Alice Example"
    # Disabled groups are never released.
    assert scope_claims(user, {"groups"}) == {"groups": ["admins", "staff"]}


def test_append_query_params_replaces_existing_keys() -> None:
    url = append_query_params("https://app.example/cb?ticket=old&x=1", {"ticket": "ST-1"})
    assert query_param(url, "ticket") == "ST-1"
    assert query_param(url, "x") == "1"


def test_origin_comparison_ignores_path_and_case() -> None:
    assert url_origin("HTTPS://App.Example:8443/path?q=1") == "https://app.example:8443"
    assert url_origin("/relative/path") is None
    assert same_origin("https://app.example/a", "https://APP.example/b?c=d")
    assert not same_origin("https://app.example/a", "http://app.example/a")
    assert not same_origin("https://app.example", "https://app.example.evil.test")


def test_audience_rules_per_artifact_kind() -> None:
    # Codes bind to the exact redirect_uri; CAS tickets to the service origin.
    assert audience_matches(ArtifactKind.OIDC_CODE, "https://rp/cb", "https://rp/cb")
    assert not audience_matches(ArtifactKind.OIDC_CODE, "https://rp/cb", "https://rp/cb/")
    assert audience_matches(ArtifactKind.SERVICE_TICKET, "https://app/a", "https://app/b")
    assert not audience_matches(ArtifactKind.PROXY_TICKET, "https://app/a", "https://other/a")


def test_generated_tokens_carry_prefix_and_entropy() -> None:
    first = generate_token("ST-")
    second = generate_token("ST-")
    assert first.startswith("ST-")
    assert first != second
    assert len(first) == len("ST-") + 43
