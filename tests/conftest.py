import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from grantflow.clients.blockchain import StaticBlockchain
from grantflow.config import Settings
from grantflow.context import build_in_memory_context
from grantflow.main import create_app
from grantflow.models import Allocator, Client, Datacap, Signer
from grantflow.security import JwtSecurityConfig
from grantflow import workflow

OWNER = "filplus"
REPO = "applications"
MULTISIG = "f2multisig"
ALLOCATOR_ADDRESS = "f1allocator"
SIGNING_ADDRESSES = {
    "alice": "f1alice",
    "bob": "f1bob",
    "carol": "f1carol",
    "mallory": "f1mallory",
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "JWT_SHARED_SECRET",
        "JWT_ISSUER",
        "JWT_AUDIENCE",
        "JWT_REQUIRED_CLAIMS",
        "GITHUB_TOKEN",
        "GRANTFLOW_CACHE_BACKEND",
        "POSTGRES_DSN",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def ctx():
    context = build_in_memory_context(Settings.from_env({}))
    context.blockchain = StaticBlockchain(
        thresholds={MULTISIG: 2},
        allowances={ALLOCATOR_ADDRESS: "1PiB"},
    )
    context.allocators.upsert(
        allocator=Allocator(
            owner=OWNER,
            repo=REPO,
            multisig_address=MULTISIG,
            multisig_threshold=2,
            verifiers_gh_handles="alice, bob,Carol",
            address=ALLOCATOR_ADDRESS,
        )
    )
    return context


@pytest.fixture
def platform(ctx):
    return ctx.platform(OWNER, REPO)


@pytest.fixture
def signer():
    def _make(name: str, *, address: str | None = None) -> Signer:
        return Signer(
            github_username=name,
            signing_address=address or SIGNING_ADDRESSES[name],
            created_at="2024-05-01T10:00:00+00:00",
            message_cid=f"bafy-{name}",
        )

    return _make


@pytest.fixture
def submit(ctx):
    def _submit(application_id: str = "app-1", *, issue_number: str = "42", total: str = "100TiB"):
        return workflow.submit_application(
            ctx,
            application_id=application_id,
            owner=OWNER,
            repo=REPO,
            issue_number=issue_number,
            client=Client(name="Acme Data", region="Europe", industry="Research"),
            datacap=Datacap(type="ldn-v3", total_requested_amount=total, replicas=4),
            client_on_chain_address="f1client",
        )

    return _submit


@pytest.fixture
def triggered(ctx, submit):
    def _trigger(application_id: str = "app-1", *, amount: str = "10TiB"):
        submit(application_id)
        return workflow.complete_governance_review(
            ctx,
            application_id=application_id,
            owner=OWNER,
            repo=REPO,
            github_username="alice",
            allocation_amount=amount,
        )

    return _trigger


@pytest.fixture
def granted(ctx, triggered, signer):
    def _grant(application_id: str = "app-1", *, amount: str = "10TiB"):
        app = triggered(application_id, amount=amount)
        request_id = app.lifecycle.active_request
        workflow.complete_new_application_proposal(
            ctx,
            application_id=application_id,
            owner=OWNER,
            repo=REPO,
            signer=signer("alice"),
            request_id=request_id,
        )
        return workflow.complete_new_application_approval(
            ctx,
            application_id=application_id,
            owner=OWNER,
            repo=REPO,
            signer=signer("bob"),
            request_id=request_id,
        )

    return _grant


@pytest.fixture
def client(ctx) -> TestClient:
    app = create_app(ctx, security_cfg=JwtSecurityConfig.from_env({}))
    return TestClient(app)
