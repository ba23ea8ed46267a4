from __future__ import annotations

import pytest

from grantflow import quorum
from grantflow.errors import IllegalTransition
from grantflow.models import AllocationRequest, First, Refill, Signer, SpsChangeRequest


def _signer(name: str, address: str | None = None) -> Signer:
    return Signer(github_username=name, signing_address=address or f"f1{name}", created_at="t", message_cid="c")


def _requests() -> tuple[AllocationRequest, ...]:
    return (
        AllocationRequest(id="r1", actor="alice", kind=First(), amount="1TiB", is_active=False, signers=(_signer("alice"),)),
        AllocationRequest(id="r2", actor="alice", kind=Refill(1), amount="2TiB"),
    )


def test_find_and_active():
    requests = _requests()
    assert quorum.find(requests, "r1").amount == "1TiB"
    assert quorum.find(requests, "nope") is None
    assert quorum.active(requests).id == "r2"


def test_open_request_refuses_second_active_request():
    with pytest.raises(IllegalTransition) as exc:
        quorum.open_request(_requests(), AllocationRequest(id="r3", actor="bob", kind=Refill(2), amount="1TiB"))
    assert exc.value.code == "REQUEST_ALREADY_ACTIVE"


def test_open_request_stamps_times():
    opened = quorum.open_request((), SpsChangeRequest(id="s1"))
    assert opened[0].is_active is True
    assert opened[0].created_at
    assert opened[0].created_at == opened[0].updated_at


def test_add_signer_keeps_order_and_ignores_closed_requests():
    requests = quorum.add_signer(_requests(), "r2", _signer("bob"))
    requests = quorum.add_signer(requests, "r2", _signer("carol"))
    requests = quorum.add_signer(requests, "r1", _signer("mallory"))

    assert [s.github_username for s in requests[1].signers] == ["bob", "carol"]
    assert requests[1].is_active is True
    assert [s.github_username for s in requests[0].signers] == ["alice"]


def test_add_signer_and_complete_closes_request():
    requests = quorum.add_signer_and_complete(_requests(), "r2", _signer("bob"))
    assert requests[1].is_active is False
    assert quorum.active(requests) is None
    assert quorum.has_quorum(requests[1], 1)
    assert not quorum.has_quorum(requests[1], 2)


def test_complete_without_signer():
    requests = quorum.complete(_requests(), "r2")
    assert requests[1].is_active is False
    assert requests[1].signers == ()


def test_duplicate_detection_by_address_or_handle():
    requests = _requests()
    assert quorum.is_duplicate_signer(requests, "r1", "f1alice")
    assert quorum.is_duplicate_signer(requests, "r1", "f1other", "ALICE")
    assert not quorum.is_duplicate_signer(requests, "r1", "f1bob", "bob")
    assert not quorum.is_duplicate_signer(requests, "missing", "f1alice")
