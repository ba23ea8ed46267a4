from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from conftest import OWNER, REPO
from grantflow.main import create_app
from grantflow.security import JwtSecurityConfig

SECRET = "jwt_test_secret_grantflow_32bytes_min_sha256"


def _issue_token(*, sub: str, ttl_minutes: int = 30, secret: str = SECRET) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "grantflow-test",
        "aud": "grantflow-api",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_client(ctx, submit) -> TestClient:
    submit()
    cfg = JwtSecurityConfig.from_env(
        {
            "JWT_SHARED_SECRET": SECRET,
            "JWT_ISSUER": "grantflow-test",
            "JWT_AUDIENCE": "grantflow-api",
        }
    )
    return TestClient(create_app(ctx, security_cfg=cfg))


def _kyc(client: TestClient, *, github_username: str, token: str | None = None):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return client.post(
        "/application/request_kyc",
        params={"id": "app-1", "owner": OWNER, "repo": REPO, "github_username": github_username},
        headers=headers,
    )


def test_config_is_disabled_without_secret():
    assert JwtSecurityConfig.from_env({}).enabled is False
    cfg = JwtSecurityConfig.from_env({"JWT_SHARED_SECRET": "x"})
    assert cfg.enabled is True
    assert cfg.required_claims == ["sub", "exp"]


def test_write_without_token_is_unauthorized(auth_client):
    resp = _kyc(auth_client, github_username="alice")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert resp.headers.get("x-trace-id")


def test_expired_or_forged_token_is_unauthorized(auth_client):
    expired = _kyc(auth_client, github_username="alice", token=_issue_token(sub="alice", ttl_minutes=-1))
    forged = _kyc(auth_client, github_username="alice", token=_issue_token(sub="alice", secret="another_secret_value"))
    assert expired.status_code == 401
    assert forged.status_code == 401


def test_subject_must_match_acting_verifier(auth_client):
    resp = _kyc(auth_client, github_username="alice", token=_issue_token(sub="bob"))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "AUTH_FORBIDDEN"


def test_matching_subject_is_accepted(auth_client):
    resp = _kyc(auth_client, github_username="alice", token=_issue_token(sub="Alice"))
    assert resp.status_code == 200
    assert resp.json()["data"]["Lifecycle"]["State"] == "KYCRequested"


def test_reads_do_not_require_token(auth_client):
    resp = auth_client.get("/application", params={"id": "app-1", "owner": OWNER, "repo": REPO})
    assert resp.status_code == 200
