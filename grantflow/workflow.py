"""Named transitions on grant applications.

Every operation has the same shape: load the canonical document, check the
state guard, apply a pure model/quorum transformation, write the canonical
store, write the cache best-effort, then notify the originating issue. There
is no lock; canonical writes carry the sha read at load time so a concurrent
writer is rejected by the platform instead of silently overwritten.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, replace

from grantflow import quorum
from grantflow.amounts import allowance_covers, parse_size_to_bytes, require_bytes
from grantflow.clients.platform import HostingPlatform, PullRequest
from grantflow.codec import MalformedDocument, dumps_application, loads_application
from grantflow.context import WorkflowContext
from grantflow.errors import (
    CollaboratorFailure,
    IllegalTransition,
    duplicate_signature,
    illegal_state,
    not_found,
    quorum_already_met,
)
from grantflow.models import (
    PRE_REVIEW_STATES,
    AllocationRequest,
    Allocator,
    AppState,
    ApplicationFile,
    Client,
    Datacap,
    First,
    Refill,
    Removal,
    RequestKind,
    Signer,
    SpsChangeRequest,
    invariant_violations,
    utcnow_iso,
)
from grantflow.notifications import commit_message, mark_error, notify
from grantflow.repositories import application_row
from grantflow.threshold import ThresholdResolution, resolve_threshold

logger = logging.getLogger(__name__)

_SIGNING_STATES = frozenset({AppState.READY_TO_SIGN, AppState.START_SIGN_DATACAP, AppState.GRANTED})


def application_branch(application_id: str) -> str:
    return f"Application/{application_id}"


def refill_branch(application_id: str, sequence: int) -> str:
    return f"Application/{application_id}/refill-{sequence}"


def change_branch(application_id: str, label: str) -> str:
    """Branch for a change to a merged document, e.g. ``Application/<id>/sps-change-2``."""
    return f"Application/{application_id}/{label}"


def pull_request_title(app: ApplicationFile) -> str:
    return f"Application:{app.id}:{app.client.name}"


@dataclass(frozen=True)
class LoadedApplication:
    app: ApplicationFile
    owner: str
    repo: str
    path: str
    branch: str
    sha: str
    pr_number: int
    platform: HostingPlatform

    @property
    def merged(self) -> bool:
        return self.pr_number == 0


def _parse_document(platform: HostingPlatform, content: str, *, issue_number: str, location: str) -> ApplicationFile:
    try:
        return loads_application(content)
    except MalformedDocument as exc:
        logger.warning("document_corrupted location=%s error=%s", location, exc)
        mark_error(platform, issue_number)
        raise CollaboratorFailure(
            code="DOCUMENT_CORRUPTED",
            message=f"application document at {location} is malformed",
        ) from exc


def _locate(platform: HostingPlatform, application_id: str, row: dict | None) -> tuple[int, str]:
    if row is not None and int(row["pr_number"]) != 0:
        pull = platform.get_pull_request(int(row["pr_number"]))
        if pull is not None and pull.state == "open":
            return pull.number, pull.head_ref
    pull = platform.get_pull_request_by_head(application_branch(application_id))
    if pull is not None:
        return pull.number, pull.head_ref
    return 0, platform.base_branch


def load_application(ctx: WorkflowContext, *, application_id: str, owner: str, repo: str) -> LoadedApplication:
    """Read the canonical document, from its open pull request when there is one."""
    platform = ctx.platform(owner, repo)
    path = ctx.document_path(application_id)
    row = ctx.applications.get(application_id=application_id, owner=owner, repo=repo)
    pr_number, branch = _locate(platform, application_id, row)
    repo_file = platform.get_file(path, branch)
    if repo_file is None:
        raise not_found(application_id)
    issue_number = str(row["issue_number"]) if row is not None and row.get("issue_number") is not None else ""
    app = _parse_document(platform, repo_file.content, issue_number=issue_number, location=f"{branch}:{path}")
    return LoadedApplication(
        app=app,
        owner=owner,
        repo=repo,
        path=path,
        branch=branch,
        sha=repo_file.sha,
        pr_number=pr_number,
        platform=platform,
    )


def load_from_pull_request(ctx: WorkflowContext, *, owner: str, repo: str, pr_number: int) -> LoadedApplication:
    platform = ctx.platform(owner, repo)
    pull = platform.get_pull_request(pr_number)
    if pull is None:
        raise IllegalTransition(
            code="APPLICATION_NOT_FOUND",
            message=f"pull request {pr_number} not found",
            http_status=404,
        )
    folder = ctx.settings.applications_folder
    paths = [x for x in platform.list_pull_request_files(pr_number) if is_application_path(folder, x)]
    if not paths:
        raise IllegalTransition(
            code="APPLICATION_NOT_FOUND",
            message=f"pull request {pr_number} does not touch an application document",
            http_status=404,
        )
    path = paths[0]
    repo_file = platform.get_file(path, pull.head_ref)
    if repo_file is None:
        raise not_found(application_id_from_path(path))
    row = ctx.applications.get(application_id=application_id_from_path(path), owner=owner, repo=repo)
    issue_number = str(row["issue_number"]) if row is not None and row.get("issue_number") is not None else ""
    app = _parse_document(platform, repo_file.content, issue_number=issue_number, location=f"{pull.head_ref}:{path}")
    return LoadedApplication(
        app=app,
        owner=owner,
        repo=repo,
        path=path,
        branch=pull.head_ref,
        sha=repo_file.sha,
        pr_number=pull.number,
        platform=platform,
    )


def is_application_path(folder: str, path: str) -> bool:
    prefix = folder.rstrip("/") + "/"
    return path.startswith(prefix) and path.endswith(".json") and "/" not in path[len(prefix) :]


def application_id_from_path(path: str) -> str:
    return path.rsplit("/", maxsplit=1)[-1].removesuffix(".json")


def write_cache(ctx: WorkflowContext, loaded: LoadedApplication) -> None:
    """Mirror ``loaded`` into the cache; failures are logged and left for reconciliation."""
    row = application_row(
        app=loaded.app,
        owner=loaded.owner,
        repo=loaded.repo,
        pr_number=loaded.pr_number,
        sha=loaded.sha,
        path=loaded.path,
        updated_at=utcnow_iso(),
    )
    try:
        if not ctx.applications.update(row=row):
            ctx.applications.create(row=row)
    except CollaboratorFailure as exc:
        logger.warning(
            "cache_write_failed application_id=%s owner=%s repo=%s code=%s",
            loaded.app.id,
            loaded.owner,
            loaded.repo,
            exc.code,
        )


def _delete_cache_row(ctx: WorkflowContext, *, application_id: str, owner: str, repo: str, pr_number: int) -> None:
    try:
        ctx.applications.delete(application_id=application_id, owner=owner, repo=repo, pr_number=pr_number)
    except CollaboratorFailure as exc:
        logger.warning(
            "cache_delete_failed application_id=%s owner=%s repo=%s pr_number=%s code=%s",
            application_id,
            owner,
            repo,
            pr_number,
            exc.code,
        )


def persist(
    ctx: WorkflowContext,
    loaded: LoadedApplication,
    app: ApplicationFile,
    *,
    operation: str,
    actor: str,
    mirror: bool = True,
) -> LoadedApplication:
    """Write ``app`` over the document read into ``loaded``, then mirror it into the cache.

    Documents that break the request invariants are refused before anything is written.
    """
    problems = invariant_violations(app)
    if problems:
        logger.error(
            "transition_refused operation=%s application_id=%s problems=%s",
            operation,
            app.id,
            "; ".join(problems),
        )
        raise IllegalTransition(
            code="DOCUMENT_INVARIANT_VIOLATED",
            message=f"application {app.id} would be left inconsistent: {'; '.join(problems)}",
        )
    message = commit_message(
        operation=operation,
        application_id=app.id,
        actor=actor,
        from_state=loaded.app.state,
        to_state=app.state,
    )
    new_sha = loaded.platform.update_file_content(
        path=loaded.path,
        message=message,
        content=dumps_application(app),
        branch=loaded.branch,
        sha=loaded.sha,
    )
    saved = replace(loaded, app=app, sha=new_sha)
    if mirror:
        write_cache(ctx, saved)
    logger.info(
        "transition_applied operation=%s application_id=%s owner=%s repo=%s from_state=%s to_state=%s actor=%s",
        operation,
        app.id,
        loaded.owner,
        loaded.repo,
        loaded.app.state.value,
        app.state.value,
        actor,
    )
    return saved


def _require_state(loaded: LoadedApplication, allowed: Iterable[AppState], operation: str) -> None:
    if loaded.app.state not in set(allowed):
        raise illegal_state(application_id=loaded.app.id, operation=operation, state=loaded.app.state.value)


def get_allocator(ctx: WorkflowContext, *, owner: str, repo: str) -> Allocator:
    allocator = ctx.allocators.get(owner=owner, repo=repo)
    if allocator is None:
        raise IllegalTransition(
            code="ALLOCATOR_NOT_FOUND",
            message=f"no allocator configured for {owner}/{repo}",
            http_status=404,
        )
    return allocator


def _require_verifier(allocator: Allocator, github_username: str) -> None:
    if not allocator.is_verifier(github_username):
        raise IllegalTransition(
            code="VERIFIER_NOT_AUTHORIZED",
            message=f"{github_username} is not a verifier for {allocator.owner}/{allocator.repo}",
            http_status=403,
        )


def effective_threshold(ctx: WorkflowContext, allocator: Allocator) -> ThresholdResolution:
    resolution = resolve_threshold(
        allocator=allocator,
        blockchain=ctx.blockchain,
        allocators=ctx.allocators,
        default=ctx.settings.default_multisig_threshold,
    )
    logger.debug(
        "threshold_resolved owner=%s repo=%s value=%s source=%s",
        allocator.owner,
        allocator.repo,
        resolution.value,
        resolution.source,
    )
    if resolution.value < 1:
        resolution = replace(resolution, value=1)
    return resolution


def _require_allowance(ctx: WorkflowContext, allocator: Allocator, amount: str) -> None:
    address = allocator.address or allocator.multisig_address
    if not address:
        raise IllegalTransition(
            code="INSUFFICIENT_ALLOWANCE",
            message=f"allocator {allocator.owner}/{allocator.repo} has no on-chain address",
        )
    allowance = ctx.blockchain.get_allowance_for_address(address)
    covered = allowance_covers(allowance, amount)
    if covered is None:
        raise CollaboratorFailure(
            code="BLOCKCHAIN_REQUEST_FAILED",
            message=f"allowance {allowance!r} for {address} is not a datacap amount",
        )
    if not covered:
        raise IllegalTransition(
            code="INSUFFICIENT_ALLOWANCE",
            message=f"allowance {allowance} of {address} does not cover {amount}",
        )


def _counts_toward_ceiling(kind: RequestKind) -> bool:
    if isinstance(kind, (First, Refill)):
        return True
    if isinstance(kind, Removal):
        return False
    raise TypeError(f"unsupported request kind: {kind!r}")


def _require_within_ceiling(app: ApplicationFile, amount: str, *, replacing: str | None = None) -> None:
    ceiling = require_bytes(app.datacap.total_requested_amount, field="total requested amount")
    requested = require_bytes(amount)
    used = sum(
        parse_size_to_bytes(item.amount) or 0
        for item in app.allocation
        if item.id != replacing and _counts_toward_ceiling(item.kind)
    )
    if used + requested > ceiling:
        raise IllegalTransition(
            code="EXCEEDS_CEILING",
            message=(
                f"requesting {amount} would exceed the total of {app.datacap.total_requested_amount} "
                f"for application {app.id}"
            ),
        )


def _active_request(app: ApplicationFile, request_id: str) -> AllocationRequest:
    request = quorum.find(app.allocation, request_id)
    if request is None or not request.is_active or app.lifecycle.active_request != request_id:
        raise IllegalTransition(
            code="REQUEST_NOT_ACTIVE",
            message=f"request {request_id} is not the active request of application {app.id}",
        )
    return request


def _with_amount(allocation: tuple[AllocationRequest, ...], request_id: str, amount: str) -> tuple[AllocationRequest, ...]:
    return tuple(replace(item, amount=amount) if item.id == request_id else item for item in allocation)


def _finish(ctx: WorkflowContext, loaded: LoadedApplication, app: ApplicationFile, *, operation: str, actor: str, note: str = "") -> ApplicationFile:
    saved = persist(ctx, loaded, app, operation=operation, actor=actor)
    notify(saved.platform, saved.app, actor=actor, note=note)
    return saved.app


def _stage_on_branch(
    ctx: WorkflowContext,
    loaded: LoadedApplication,
    app: ApplicationFile,
    *,
    branch: str,
    operation: str,
    actor: str,
    note: str = "",
) -> ApplicationFile:
    """Commit a change to a merged document on a new branch and open its pull request.

    The merged cache row is replaced by an active row for the new pull request.
    """
    platform = loaded.platform
    platform.create_branch(branch, platform.base_branch)
    saved = persist(ctx, replace(loaded, branch=branch), app, operation=operation, actor=actor, mirror=False)
    pull = platform.create_pull_request(
        title=pull_request_title(app),
        body=f"resolves #{app.issue_number}",
        head=branch,
        base=platform.base_branch,
    )
    saved = replace(saved, pr_number=pull.number)
    _delete_cache_row(ctx, application_id=app.id, owner=loaded.owner, repo=loaded.repo, pr_number=0)
    write_cache(ctx, saved)
    logger.info(
        "change_staged application_id=%s owner=%s repo=%s branch=%s pr_number=%s",
        app.id,
        loaded.owner,
        loaded.repo,
        branch,
        pull.number,
    )
    notify(platform, saved.app, actor=actor, note=note)
    return saved.app


def _commit(
    ctx: WorkflowContext,
    loaded: LoadedApplication,
    app: ApplicationFile,
    *,
    branch_label: str,
    operation: str,
    actor: str,
    note: str = "",
) -> ApplicationFile:
    if loaded.merged:
        branch = change_branch(app.id, branch_label)
        return _stage_on_branch(ctx, loaded, app, branch=branch, operation=operation, actor=actor, note=note)
    return _finish(ctx, loaded, app, operation=operation, actor=actor, note=note)


def submit_application(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    issue_number: str,
    client: Client,
    datacap: Datacap,
    client_on_chain_address: str,
    client_contract_address: str | None = None,
) -> ApplicationFile:
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    require_bytes(datacap.total_requested_amount, field="total requested amount")
    platform = ctx.platform(owner, repo)
    path = ctx.document_path(application_id)
    branch = application_branch(application_id)
    if (
        ctx.applications.get(application_id=application_id, owner=owner, repo=repo) is not None
        or platform.get_pull_request_by_head(branch) is not None
        or platform.get_file(path, platform.base_branch) is not None
    ):
        raise IllegalTransition(message=f"application {application_id} already exists")

    app = ApplicationFile.new(
        application_id=application_id,
        issue_number=issue_number,
        client=client,
        datacap=datacap,
        client_on_chain_address=client_on_chain_address,
        multisig_address=allocator.multisig_address,
        client_contract_address=client_contract_address,
    )
    platform.create_branch(branch, platform.base_branch)
    sha = platform.create_file(
        path=path,
        message=commit_message(
            operation="submit",
            application_id=application_id,
            actor="",
            from_state=AppState.SUBMITTED,
            to_state=AppState.SUBMITTED,
        ),
        content=dumps_application(app),
        branch=branch,
    )
    pull: PullRequest = platform.create_pull_request(
        title=pull_request_title(app),
        body=f"resolves #{issue_number}",
        head=branch,
        base=platform.base_branch,
    )
    saved = LoadedApplication(
        app=app,
        owner=owner,
        repo=repo,
        path=path,
        branch=branch,
        sha=sha,
        pr_number=pull.number,
        platform=platform,
    )
    write_cache(ctx, saved)
    logger.info(
        "application_submitted application_id=%s owner=%s repo=%s pr_number=%s",
        application_id,
        owner,
        repo,
        pull.number,
    )
    notify(platform, app)
    return app


def request_kyc(ctx: WorkflowContext, *, application_id: str, owner: str, repo: str, github_username: str) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, {AppState.SUBMITTED}, "request kyc")
    _require_verifier(get_allocator(ctx, owner=owner, repo=repo), github_username)
    app = loaded.app.with_lifecycle(loaded.app.lifecycle.with_state(AppState.KYC_REQUESTED))
    return _finish(ctx, loaded, app, operation="request kyc", actor=github_username)


def complete_governance_review(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    github_username: str,
    allocation_amount: str,
    client_contract_address: str | None = None,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, PRE_REVIEW_STATES, "complete governance review")
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    _require_verifier(allocator, github_username)
    _require_within_ceiling(loaded.app, allocation_amount)
    _require_allowance(ctx, allocator, allocation_amount)

    request = AllocationRequest(
        id=str(uuid.uuid4()),
        actor=github_username,
        kind=First(),
        amount=allocation_amount,
    )
    allocation = quorum.open_request(loaded.app.allocation, request)
    lifecycle = loaded.app.lifecycle.finish_governance_review(actor=github_username, request_id=request.id)
    app = loaded.app.with_allocation(allocation, lifecycle)
    if client_contract_address:
        app = replace(app, client_contract_address=client_contract_address)
    return _finish(ctx, loaded, app, operation="complete governance review", actor=github_username)


def _reject_late_duplicate(requests: tuple, request_id: str, signer: Signer) -> None:
    """Report a repeat signature on a closed request as a duplicate, ahead of the state guard."""
    request = quorum.find(requests, request_id)
    if request is None or request.is_active:
        return
    if quorum.is_duplicate_signer(requests, request_id, signer.signing_address, signer.github_username):
        raise duplicate_signature(request_id=request_id, signer=signer.github_username)


def _approve(
    ctx: WorkflowContext,
    loaded: LoadedApplication,
    *,
    threshold: ThresholdResolution,
    signer: Signer,
    request_id: str,
    new_allocation_amount: str | None,
    operation: str,
) -> ApplicationFile:
    app = loaded.app
    request = _active_request(app, request_id)
    if quorum.has_quorum(request, threshold.value):
        # threshold dropped after the signatures were collected
        closed = app.with_allocation(quorum.complete(app.allocation, request_id), app.lifecycle.finish_approval())
        _finish(ctx, loaded, closed, operation="close request at quorum", actor=signer.github_username)
        logger.warning(
            "request_closed_at_quorum application_id=%s request_id=%s signers=%s threshold=%s source=%s",
            app.id,
            request_id,
            len(request.signers),
            threshold.value,
            threshold.source,
        )
        raise quorum_already_met(request_id=request_id, threshold=threshold.value)
    if quorum.is_duplicate_signer(app.allocation, request_id, signer.signing_address, signer.github_username):
        raise duplicate_signature(request_id=request_id, signer=signer.github_username)

    allocation = app.allocation
    if new_allocation_amount and new_allocation_amount != request.amount:
        if request.signers:
            raise IllegalTransition(message=f"request {request_id} already has signatures; its amount is fixed")
        _require_within_ceiling(app, new_allocation_amount, replacing=request_id)
        allocation = _with_amount(allocation, request_id, new_allocation_amount)

    if len(request.signers) + 1 >= threshold.value:
        allocation = quorum.add_signer_and_complete(allocation, request_id, signer)
        lifecycle = app.lifecycle.finish_approval()
    else:
        allocation = quorum.add_signer(allocation, request_id, signer)
        lifecycle = app.lifecycle.with_state(AppState.START_SIGN_DATACAP)
    return _finish(ctx, loaded, app.with_allocation(allocation, lifecycle), operation=operation, actor=signer.github_username)


def complete_new_application_proposal(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    signer: Signer,
    request_id: str,
    new_allocation_amount: str | None = None,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, {AppState.READY_TO_SIGN}, "propose")
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    _require_verifier(allocator, signer.github_username)
    threshold = effective_threshold(ctx, allocator)
    if threshold.value < 2:
        logger.info(
            "proposal_routed_to_approval application_id=%s threshold=%s source=%s",
            application_id,
            threshold.value,
            threshold.source,
        )
        return _approve(
            ctx,
            loaded,
            threshold=threshold,
            signer=signer,
            request_id=request_id,
            new_allocation_amount=new_allocation_amount,
            operation="approve",
        )

    app = loaded.app
    request = _active_request(app, request_id)
    if quorum.is_duplicate_signer(app.allocation, request_id, signer.signing_address, signer.github_username):
        raise duplicate_signature(request_id=request_id, signer=signer.github_username)
    if request.signers:
        raise IllegalTransition(message=f"request {request_id} has already been proposed")
    allocation = app.allocation
    if new_allocation_amount and new_allocation_amount != request.amount:
        _require_within_ceiling(app, new_allocation_amount, replacing=request_id)
        allocation = _with_amount(allocation, request_id, new_allocation_amount)
    allocation = quorum.add_signer(allocation, request_id, signer)
    updated = app.with_allocation(allocation, app.lifecycle.finish_proposal())
    return _finish(ctx, loaded, updated, operation="propose", actor=signer.github_username)


def complete_new_application_approval(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    signer: Signer,
    request_id: str,
    new_allocation_amount: str | None = None,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _reject_late_duplicate(loaded.app.allocation, request_id, signer)
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    threshold = effective_threshold(ctx, allocator)
    allowed = {AppState.START_SIGN_DATACAP}
    if threshold.value < 2:
        allowed.add(AppState.READY_TO_SIGN)
    _require_state(loaded, allowed, "approve")
    _require_verifier(allocator, signer.github_username)
    return _approve(
        ctx,
        loaded,
        threshold=threshold,
        signer=signer,
        request_id=request_id,
        new_allocation_amount=new_allocation_amount,
        operation="approve",
    )


def _sps_resume_state(app: ApplicationFile) -> AppState:
    return AppState.READY_TO_SIGN if app.lifecycle.active_request else AppState.GRANTED


def complete_sps_change_proposal(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    signer: Signer,
    allowed_sps: list[int] | None = None,
    max_deviation: str | None = None,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, {AppState.READY_TO_SIGN, AppState.GRANTED}, "propose storage providers")
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    _require_verifier(allocator, signer.github_username)
    threshold = effective_threshold(ctx, allocator)

    app = loaded.app
    request = SpsChangeRequest(
        id=str(uuid.uuid4()),
        allowed_sps=tuple(allowed_sps) if allowed_sps is not None else None,
        max_deviation=max_deviation,
    )
    requests = quorum.open_request(app.sps_change_requests, request)
    if threshold.value < 2:
        requests = quorum.add_signer_and_complete(requests, request.id, signer)
        lifecycle = app.lifecycle.with_state(_sps_resume_state(app))
    else:
        requests = quorum.add_signer(requests, request.id, signer)
        lifecycle = app.lifecycle.with_state(AppState.CHANGING_SP)
    updated = app.with_sps_change_requests(requests, lifecycle)
    return _commit(
        ctx,
        loaded,
        updated,
        branch_label=f"sps-change-{len(requests)}",
        operation="propose storage providers",
        actor=signer.github_username,
    )


def complete_sps_change_approval(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    signer: Signer,
    request_id: str,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    app = loaded.app
    _reject_late_duplicate(app.sps_change_requests, request_id, signer)
    _require_state(loaded, {AppState.CHANGING_SP}, "approve storage providers")
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    _require_verifier(allocator, signer.github_username)
    threshold = effective_threshold(ctx, allocator)

    request = quorum.find(app.sps_change_requests, request_id)
    if request is None or not request.is_active:
        raise IllegalTransition(
            code="REQUEST_NOT_ACTIVE",
            message=f"storage provider change request {request_id} is not active",
        )
    if quorum.has_quorum(request, threshold.value):
        closed = app.with_sps_change_requests(
            quorum.complete(app.sps_change_requests, request_id),
            app.lifecycle.with_state(_sps_resume_state(app)),
        )
        _finish(ctx, loaded, closed, operation="close storage provider change at quorum", actor=signer.github_username)
        logger.warning(
            "sps_change_closed_at_quorum application_id=%s request_id=%s signers=%s threshold=%s",
            app.id,
            request_id,
            len(request.signers),
            threshold.value,
        )
        raise quorum_already_met(request_id=request_id, threshold=threshold.value)
    if quorum.is_duplicate_signer(app.sps_change_requests, request_id, signer.signing_address, signer.github_username):
        raise duplicate_signature(request_id=request_id, signer=signer.github_username)
    if len(request.signers) + 1 >= threshold.value:
        requests = quorum.add_signer_and_complete(app.sps_change_requests, request_id, signer)
        lifecycle = app.lifecycle.with_state(_sps_resume_state(app))
    else:
        requests = quorum.add_signer(app.sps_change_requests, request_id, signer)
        lifecycle = app.lifecycle.with_state(AppState.CHANGING_SP)
    updated = app.with_sps_change_requests(requests, lifecycle)
    return _finish(ctx, loaded, updated, operation="approve storage providers", actor=signer.github_username)


def decline_application(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    github_username: str,
    reason: str = "",
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, PRE_REVIEW_STATES, "decline")
    if loaded.merged:
        raise illegal_state(application_id=application_id, operation="decline", state="merged")
    _require_verifier(get_allocator(ctx, owner=owner, repo=repo), github_username)
    row = ctx.applications.get(application_id=application_id, owner=owner, repo=repo, pr_number=loaded.pr_number)
    if row is not None and row.get("application"):
        try:
            cached = loads_application(str(row["application"]))
        except MalformedDocument:
            cached = None
        if cached is not None and not cached.state.is_pre_review():
            raise illegal_state(application_id=application_id, operation="decline", state=cached.state.value)

    platform = loaded.platform
    platform.close_pull_request(loaded.pr_number)
    issue = loaded.app.issue_number
    if str(issue).strip().isdigit():
        text = f"Application declined by @{github_username}."
        if reason:
            text = f"{text}\n\n{reason}"
        platform.add_comment_to_issue(int(issue), text)
        platform.close_issue(int(issue))
    _delete_cache_row(ctx, application_id=application_id, owner=owner, repo=repo, pr_number=loaded.pr_number)
    logger.info(
        "application_declined application_id=%s owner=%s repo=%s pr_number=%s actor=%s",
        application_id,
        owner,
        repo,
        loaded.pr_number,
        github_username,
    )
    return loaded.app


def additional_info_required(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    github_username: str,
    verifier_message: str = "",
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, PRE_REVIEW_STATES, "request additional info")
    _require_verifier(get_allocator(ctx, owner=owner, repo=repo), github_username)
    app = loaded.app.with_lifecycle(loaded.app.lifecycle.with_state(AppState.ADDITIONAL_INFO_REQUIRED))
    return _finish(
        ctx,
        loaded,
        app,
        operation="request additional info",
        actor=github_username,
        note=verifier_message,
    )


def update_from_issue(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    client: Client | None = None,
    datacap: Datacap | None = None,
) -> ApplicationFile:
    """Apply an edit of the originating issue.

    Edits to a merged application go out on their own pull request, flagged
    ``edited`` so a verifier has to approve them before the merge.
    """
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    app = loaded.app
    if client is not None:
        app = replace(app, client=client)
    if datacap is not None:
        require_bytes(datacap.total_requested_amount, field="total requested amount")
        app = replace(app, datacap=datacap)

    state = app.state
    if state == AppState.ADDITIONAL_INFO_REQUIRED:
        app = app.with_lifecycle(app.lifecycle.with_state(AppState.ADDITIONAL_INFO_SUBMITTED))
    elif loaded.merged:
        if app != loaded.app:
            app = app.with_lifecycle(app.lifecycle.mark_edited(True))
    elif state in _SIGNING_STATES:
        app = app.with_lifecycle(app.lifecycle.mark_edited(True))

    if app == loaded.app:
        return app
    return _commit(
        ctx,
        loaded,
        app,
        branch_label=f"update-{uuid.uuid4().hex[:8]}",
        operation="update from issue",
        actor="",
    )


def approve_changes(ctx: WorkflowContext, *, application_id: str, owner: str, repo: str, github_username: str) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    if not loaded.app.edited:
        raise IllegalTransition(message=f"application {application_id} has no pending changes")
    _require_verifier(get_allocator(ctx, owner=owner, repo=repo), github_username)
    app = loaded.app.with_lifecycle(loaded.app.lifecycle.mark_edited(False))
    return _finish(ctx, loaded, app, operation="approve changes", actor=github_username)


def refill(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    github_username: str,
    amount: str,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, {AppState.GRANTED}, "refill")
    if not loaded.merged:
        raise illegal_state(application_id=application_id, operation="refill", state="pending review")
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    _require_verifier(allocator, github_username)
    _require_within_ceiling(loaded.app, amount)
    _require_allowance(ctx, allocator, amount)

    app = loaded.app
    sequence = sum(1 for item in app.allocation if isinstance(item.kind, Refill)) + 1
    request = AllocationRequest(
        id=str(uuid.uuid4()),
        actor=github_username,
        kind=Refill(sequence=sequence),
        amount=amount,
    )
    allocation = quorum.open_request(app.allocation, request)
    updated = app.with_allocation(allocation, app.lifecycle.start_refill_request(request_id=request.id))
    return _stage_on_branch(
        ctx,
        loaded,
        updated,
        branch=refill_branch(application_id, sequence),
        operation="refill",
        actor=github_username,
    )


def granted_bytes(app: ApplicationFile) -> int:
    """Datacap handed out by closed requests, net of closed removals."""
    total = 0
    for item in app.allocation:
        if item.is_active:
            continue
        size = parse_size_to_bytes(item.amount) or 0
        total += -size if isinstance(item.kind, Removal) else size
    return total


def propose_decrease_allowance(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    signer: Signer,
    amount: str,
    reason: str = "",
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, {AppState.GRANTED}, "propose decrease allowance")
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    _require_verifier(allocator, signer.github_username)
    app = loaded.app
    requested = require_bytes(amount, field="amount to decrease")
    if requested > granted_bytes(app):
        raise IllegalTransition(
            code="EXCEEDS_GRANTED_AMOUNT",
            message=f"cannot remove {amount} from application {app.id}; it exceeds the datacap granted so far",
        )
    threshold = effective_threshold(ctx, allocator)

    request = AllocationRequest(
        id=str(uuid.uuid4()),
        actor=signer.github_username,
        kind=Removal(),
        amount=amount,
    )
    allocation = quorum.open_request(app.allocation, request)
    if threshold.value < 2:
        allocation = quorum.add_signer_and_complete(allocation, request.id, signer)
        lifecycle = app.lifecycle.with_state(AppState.GRANTED)
    else:
        allocation = quorum.add_signer(allocation, request.id, signer)
        lifecycle = app.lifecycle.start_removal_request(request_id=request.id)
    removals = sum(1 for item in allocation if isinstance(item.kind, Removal))
    return _commit(
        ctx,
        loaded,
        app.with_allocation(allocation, lifecycle),
        branch_label=f"decrease-{removals}",
        operation="propose decrease allowance",
        actor=signer.github_username,
        note=reason,
    )


def approve_decrease_allowance(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    signer: Signer,
    request_id: str,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _reject_late_duplicate(loaded.app.allocation, request_id, signer)
    request = quorum.find(loaded.app.allocation, request_id)
    if request is None or not isinstance(request.kind, Removal):
        raise IllegalTransition(
            code="REQUEST_NOT_ACTIVE",
            message=f"request {request_id} is not a decrease of application {application_id}",
        )
    _require_state(loaded, {AppState.START_SIGN_DATACAP}, "approve decrease allowance")
    allocator = get_allocator(ctx, owner=owner, repo=repo)
    _require_verifier(allocator, signer.github_username)
    return _approve(
        ctx,
        loaded,
        threshold=effective_threshold(ctx, allocator),
        signer=signer,
        request_id=request_id,
        new_allocation_amount=None,
        operation="approve decrease allowance",
    )


def total_datacap_reached(
    ctx: WorkflowContext,
    *,
    application_id: str,
    owner: str,
    repo: str,
    github_username: str,
) -> ApplicationFile:
    loaded = load_application(ctx, application_id=application_id, owner=owner, repo=repo)
    _require_state(loaded, {AppState.GRANTED}, "mark total datacap reached")
    _require_verifier(get_allocator(ctx, owner=owner, repo=repo), github_username)
    if quorum.active(loaded.app.allocation) is not None:
        raise illegal_state(application_id=application_id, operation="mark total datacap reached", state="open request")
    return _commit(
        ctx,
        loaded,
        loaded.app.reached_total_datacap(),
        branch_label="total-datacap-reached",
        operation="total datacap reached",
        actor=github_username,
    )


def _row_application(row: dict) -> ApplicationFile | None:
    try:
        return loads_application(str(row.get("application") or ""))
    except MalformedDocument as exc:
        logger.warning("cached_document_malformed application_id=%s error=%s", row.get("id"), exc)
        return None


def get_application(ctx: WorkflowContext, *, application_id: str, owner: str, repo: str) -> ApplicationFile:
    row = ctx.applications.get(application_id=application_id, owner=owner, repo=repo)
    if row is None:
        raise not_found(application_id)
    app = _row_application(row)
    if app is None:
        raise CollaboratorFailure(
            code="DOCUMENT_CORRUPTED",
            message=f"cached document for application {application_id} is malformed",
        )
    return app


def list_active(ctx: WorkflowContext, *, owner: str, repo: str) -> list[ApplicationFile]:
    rows = ctx.applications.list_active(owner=owner, repo=repo)
    return [app for app in (_row_application(row) for row in rows) if app is not None]


def list_merged(ctx: WorkflowContext, *, owner: str, repo: str) -> list[ApplicationFile]:
    rows = ctx.applications.list_merged(owner=owner, repo=repo)
    return [app for app in (_row_application(row) for row in rows) if app is not None]
