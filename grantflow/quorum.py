"""Signature quorum bookkeeping over a list of requests.

Works for allocation requests and storage-provider change requests alike;
both carry ``id``, ``is_active`` and an ordered ``signers`` tuple. The
tracker does not know the threshold; callers pass it in when asking about
quorum.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TypeVar

from grantflow.errors import IllegalTransition
from grantflow.models import AllocationRequest, Signer, SpsChangeRequest, utcnow_iso

R = TypeVar("R", AllocationRequest, SpsChangeRequest)


def find(requests: tuple[R, ...], request_id: str) -> R | None:
    for item in requests:
        if item.id == request_id:
            return item
    return None


def active(requests: tuple[R, ...]) -> R | None:
    for item in requests:
        if item.is_active:
            return item
    return None


def open_request(requests: tuple[R, ...], request: R) -> tuple[R, ...]:
    current = active(requests)
    if current is not None:
        raise IllegalTransition(
            code="REQUEST_ALREADY_ACTIVE",
            message=f"request {current.id} is still open",
        )
    stamp = utcnow_iso()
    opened = replace(
        request,
        is_active=True,
        created_at=request.created_at or stamp,
        updated_at=request.updated_at or stamp,
    )
    return (*requests, opened)


def _append(requests: tuple[R, ...], request_id: str, signer: Signer, *, complete: bool) -> tuple[R, ...]:
    result: list[R] = []
    applied = False
    for item in requests:
        if not applied and item.id == request_id and item.is_active:
            item = replace(
                item,
                signers=(*item.signers, signer),
                is_active=not complete,
                updated_at=utcnow_iso(),
            )
            applied = True
        result.append(item)
    return tuple(result)


def add_signer(requests: tuple[R, ...], request_id: str, signer: Signer) -> tuple[R, ...]:
    """Append ``signer`` to an active request; unknown or closed requests are left untouched."""
    return _append(requests, request_id, signer, complete=False)


def add_signer_and_complete(requests: tuple[R, ...], request_id: str, signer: Signer) -> tuple[R, ...]:
    return _append(requests, request_id, signer, complete=True)


def complete(requests: tuple[R, ...], request_id: str) -> tuple[R, ...]:
    return tuple(
        replace(item, is_active=False, updated_at=utcnow_iso()) if item.id == request_id and item.is_active else item
        for item in requests
    )


def is_duplicate_signer(
    requests: tuple[R, ...],
    request_id: str,
    signing_address: str,
    github_username: str | None = None,
) -> bool:
    request = find(requests, request_id)
    if request is None:
        return False
    handle = (github_username or "").strip().lower()
    for signer in request.signers:
        if signer.signing_address == signing_address:
            return True
        if handle and signer.github_username.strip().lower() == handle:
            return True
    return False


def has_quorum(request: AllocationRequest | SpsChangeRequest, threshold: int) -> bool:
    return len(request.signers) >= threshold
