from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from grantflow import workflow
from grantflow.codec import application_to_dict
from grantflow.context import WorkflowContext
from grantflow.models import ApplicationFile
from grantflow.routes._deps import acting_verifier, get_context, trace_id_from_request
from grantflow.schemas import (
    AdditionalInfoRequest,
    ApproveRequest,
    DeclineRequest,
    DecreaseAllowanceApproveRequest,
    DecreaseAllowanceProposeRequest,
    ProposeRequest,
    RefillRequest,
    StorageProvidersApproveRequest,
    StorageProvidersProposeRequest,
    SubmitApplicationRequest,
    TriggerRequest,
    UpdateFromIssueRequest,
    success_envelope,
)

router = APIRouter(tags=["applications"])


def _respond(request: Request, app: ApplicationFile) -> dict:
    return success_envelope(application_to_dict(app), trace_id_from_request(request))


@router.get("/application")
def get_application(
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.get_application(ctx, application_id=application_id, owner=owner, repo=repo)
    return _respond(request, app)


@router.get("/applications/active")
def list_active_applications(
    request: Request,
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    ctx: WorkflowContext = Depends(get_context),
):
    items = [application_to_dict(x) for x in workflow.list_active(ctx, owner=owner, repo=repo)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.get("/applications/merged")
def list_merged_applications(
    request: Request,
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    ctx: WorkflowContext = Depends(get_context),
):
    items = [application_to_dict(x) for x in workflow.list_merged(ctx, owner=owner, repo=repo)]
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/application/submit")
def submit_application(
    payload: SubmitApplicationRequest,
    request: Request,
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.submit_application(
        ctx,
        application_id=payload.id,
        owner=payload.owner,
        repo=payload.repo,
        issue_number=payload.issue_number,
        client=payload.client.to_model(),
        datacap=payload.datacap.to_model(),
        client_on_chain_address=payload.client_on_chain_address,
        client_contract_address=payload.client_contract_address,
    )
    return _respond(request, app)


@router.post("/application/trigger")
def trigger_application(
    payload: TriggerRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.complete_governance_review(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        github_username=github_username,
        allocation_amount=payload.allocation_amount,
        client_contract_address=payload.client_contract_address,
    )
    return _respond(request, app)


@router.post("/application/propose")
def propose_application(
    payload: ProposeRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.complete_new_application_proposal(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        signer=payload.signer.to_signer(github_username),
        request_id=payload.request_id,
        new_allocation_amount=payload.new_allocation_amount,
    )
    return _respond(request, app)


@router.post("/application/approve")
def approve_application(
    payload: ApproveRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.complete_new_application_approval(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        signer=payload.signer.to_signer(github_username),
        request_id=payload.request_id,
        new_allocation_amount=payload.new_allocation_amount,
    )
    return _respond(request, app)


@router.post("/application/propose_storage_providers")
def propose_storage_providers(
    payload: StorageProvidersProposeRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.complete_sps_change_proposal(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        signer=payload.signer.to_signer(github_username),
        allowed_sps=payload.allowed_sps,
        max_deviation=payload.max_deviation,
    )
    return _respond(request, app)


@router.post("/application/approve_storage_providers")
def approve_storage_providers(
    payload: StorageProvidersApproveRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.complete_sps_change_approval(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        signer=payload.signer.to_signer(github_username),
        request_id=payload.request_id,
    )
    return _respond(request, app)


@router.post("/application/propose_decrease_allowance")
def propose_decrease_allowance(
    payload: DecreaseAllowanceProposeRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.propose_decrease_allowance(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        signer=payload.signer.to_signer(github_username),
        amount=payload.amount_to_decrease,
        reason=payload.reason_for_decrease,
    )
    return _respond(request, app)


@router.post("/application/approve_decrease_allowance")
def approve_decrease_allowance(
    payload: DecreaseAllowanceApproveRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.approve_decrease_allowance(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        signer=payload.signer.to_signer(github_username),
        request_id=payload.request_id,
    )
    return _respond(request, app)


@router.post("/application/decline")
def decline_application(
    request: Request,
    payload: DeclineRequest | None = None,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.decline_application(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        github_username=github_username,
        reason=payload.reason if payload is not None else "",
    )
    return _respond(request, app)


@router.post("/application/additional_info_required")
def additional_info_required(
    payload: AdditionalInfoRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.additional_info_required(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        github_username=github_username,
        verifier_message=payload.verifier_message,
    )
    return _respond(request, app)


@router.post("/application/request_kyc")
def request_kyc(
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.request_kyc(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        github_username=github_username,
    )
    return _respond(request, app)


@router.post("/application/update_from_issue")
def update_from_issue(
    payload: UpdateFromIssueRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.update_from_issue(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        client=payload.client.to_model() if payload.client is not None else None,
        datacap=payload.datacap.to_model() if payload.datacap is not None else None,
    )
    return _respond(request, app)


@router.post("/application/approve_changes")
def approve_changes(
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.approve_changes(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        github_username=github_username,
    )
    return _respond(request, app)


@router.post("/application/refill")
def refill_application(
    payload: RefillRequest,
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.refill(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        github_username=github_username,
        amount=payload.amount,
    )
    return _respond(request, app)


@router.post("/application/totaldcreached")
def total_datacap_reached(
    request: Request,
    application_id: str = Query(alias="id", min_length=1),
    owner: str = Query(min_length=1),
    repo: str = Query(min_length=1),
    github_username: str = Depends(acting_verifier),
    ctx: WorkflowContext = Depends(get_context),
):
    app = workflow.total_datacap_reached(
        ctx,
        application_id=application_id,
        owner=owner,
        repo=repo,
        github_username=github_username,
    )
    return _respond(request, app)
