"""Merge-time checks that re-derive legitimacy from the canonical document.

Nothing here trusts the caller: each check reloads the document from the
pull request and compares it against the allocator's verifier list. A failed
trigger check is corrected in place by moving the application back to
governance review.
"""

from __future__ import annotations

import logging

from grantflow import quorum
from grantflow.context import WorkflowContext
from grantflow.errors import CollaboratorFailure
from grantflow.models import AllocationRequest, Allocator, AppState, ApplicationFile, utcnow_iso
from grantflow.notifications import notify
from grantflow.repositories import application_row
from grantflow.workflow import (
    LoadedApplication,
    effective_threshold,
    get_allocator,
    load_from_pull_request,
    persist,
)

logger = logging.getLogger(__name__)

_TRIGGER_FREE_STATES = frozenset(
    {
        AppState.SUBMITTED,
        AppState.KYC_REQUESTED,
        AppState.ADDITIONAL_INFO_REQUIRED,
        AppState.ADDITIONAL_INFO_SUBMITTED,
        AppState.CHANGES_REQUESTED,
    }
)

# changes to merged applications reopen a pull request in either state
_MERGEABLE_STATES = frozenset({AppState.GRANTED, AppState.TOTAL_DATACAP_REACHED})


def _validated_by_verifier(app: ApplicationFile, allocator: Allocator) -> bool:
    lifecycle = app.lifecycle
    return bool(lifecycle.validated_by and lifecycle.validated_at) and allocator.is_verifier(lifecycle.validated_by)


def trigger_is_consistent(app: ApplicationFile, allocator: Allocator) -> bool:
    state = app.state
    if state in _TRIGGER_FREE_STATES:
        return True
    if state == AppState.ERROR:
        return False
    if not _validated_by_verifier(app, allocator):
        return False
    if state == AppState.READY_TO_SIGN:
        request_id = app.lifecycle.active_request
        request = quorum.find(app.allocation, request_id) if request_id else None
        return request is not None and request.is_active and not request.signers
    return True


def proposal_is_consistent(app: ApplicationFile, allocator: Allocator) -> bool:
    state = app.state
    if state == AppState.CHANGING_SP:
        return True
    if state == AppState.ERROR or state.before(AppState.START_SIGN_DATACAP):
        return False
    if state.after(AppState.START_SIGN_DATACAP):
        return True
    request = quorum.active(app.allocation)
    if request is None or len(request.signers) != 1:
        return False
    return allocator.is_verifier(request.signers[0].github_username)


def _last_closed_request(app: ApplicationFile) -> AllocationRequest | None:
    closed = [item for item in app.allocation if not item.is_active]
    return closed[-1] if closed else None


def approval_is_consistent(app: ApplicationFile, allocator: Allocator, threshold: int) -> bool:
    state = app.state
    if state == AppState.CHANGING_SP:
        return True
    if state == AppState.ERROR or state.before(AppState.GRANTED):
        return False
    if state.after(AppState.GRANTED):
        return True
    request = _last_closed_request(app)
    if request is None or len(request.signers) < threshold:
        return False
    return all(allocator.is_verifier(signer.github_username) for signer in request.signers)


def merge_is_ready(app: ApplicationFile) -> bool:
    lifecycle = app.lifecycle
    return (
        app.state in _MERGEABLE_STATES
        and bool(lifecycle.validated_by)
        and bool(lifecycle.validated_at)
        and lifecycle.active_request is None
        and quorum.active(app.allocation) is None
        and not app.edited
    )


def _load(ctx: WorkflowContext, *, owner: str, repo: str, pr_number: int) -> tuple[LoadedApplication, Allocator]:
    loaded = load_from_pull_request(ctx, owner=owner, repo=repo, pr_number=pr_number)
    return loaded, get_allocator(ctx, owner=owner, repo=repo)


def validate_trigger(ctx: WorkflowContext, *, owner: str, repo: str, pr_number: int, user_handle: str = "") -> bool:
    loaded, allocator = _load(ctx, owner=owner, repo=repo, pr_number=pr_number)
    app = loaded.app
    if app.edited:
        logger.info("trigger_validation_failed application_id=%s reason=edited", app.id)
        return False
    if trigger_is_consistent(app, allocator):
        return True

    logger.warning(
        "trigger_validation_failed application_id=%s state=%s validated_by=%s reverting=true",
        app.id,
        app.state.value,
        app.lifecycle.validated_by,
    )
    reverted = app.move_back_to_governance_review()
    saved = persist(ctx, loaded, reverted, operation="revert to governance review", actor=user_handle)
    notify(saved.platform, saved.app, note="The application did not pass validation and was moved back to governance review.")
    return False


def validate_proposal(ctx: WorkflowContext, *, owner: str, repo: str, pr_number: int, user_handle: str = "") -> bool:
    loaded, allocator = _load(ctx, owner=owner, repo=repo, pr_number=pr_number)
    result = proposal_is_consistent(loaded.app, allocator)
    logger.info(
        "proposal_validated application_id=%s state=%s result=%s",
        loaded.app.id,
        loaded.app.state.value,
        result,
    )
    return result


def validate_approval(ctx: WorkflowContext, *, owner: str, repo: str, pr_number: int, user_handle: str = "") -> bool:
    loaded, allocator = _load(ctx, owner=owner, repo=repo, pr_number=pr_number)
    threshold = effective_threshold(ctx, allocator)
    result = approval_is_consistent(loaded.app, allocator, threshold.value)
    logger.info(
        "approval_validated application_id=%s state=%s threshold=%s source=%s result=%s",
        loaded.app.id,
        loaded.app.state.value,
        threshold.value,
        threshold.source,
        result,
    )
    return result


def validate_merge_application(
    ctx: WorkflowContext,
    *,
    owner: str,
    repo: str,
    pr_number: int,
    user_handle: str = "",
) -> bool:
    loaded = load_from_pull_request(ctx, owner=owner, repo=repo, pr_number=pr_number)
    if not merge_is_ready(loaded.app):
        logger.info(
            "merge_validation_failed application_id=%s state=%s edited=%s",
            loaded.app.id,
            loaded.app.state.value,
            loaded.app.edited,
        )
        return False

    platform = loaded.platform
    platform.merge_pull_request(pr_number)
    merged_file = platform.get_file(loaded.path, platform.base_branch)
    sha = merged_file.sha if merged_file is not None else loaded.sha
    _promote(ctx, loaded, sha=sha)
    logger.info(
        "application_merged application_id=%s owner=%s repo=%s pr_number=%s",
        loaded.app.id,
        owner,
        repo,
        pr_number,
    )
    return True


def _promote(ctx: WorkflowContext, loaded: LoadedApplication, *, sha: str) -> None:
    row = application_row(
        app=loaded.app,
        owner=loaded.owner,
        repo=loaded.repo,
        pr_number=0,
        sha=sha,
        path=loaded.path,
        updated_at=utcnow_iso(),
    )
    try:
        ctx.applications.promote(row=row, from_pr_number=loaded.pr_number)
    except CollaboratorFailure as exc:
        logger.warning(
            "cache_promote_failed application_id=%s owner=%s repo=%s code=%s",
            loaded.app.id,
            loaded.owner,
            loaded.repo,
            exc.code,
        )
