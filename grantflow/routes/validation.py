from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from grantflow import reconciliation, validation
from grantflow.context import WorkflowContext
from grantflow.routes._deps import get_context, trace_id_from_request
from grantflow.schemas import CacheRenewalRequest, ValidationRequest, success_envelope

router = APIRouter(prefix="/application", tags=["validation"])


@router.post("/trigger/validate")
def validate_trigger(payload: ValidationRequest, request: Request, ctx: WorkflowContext = Depends(get_context)):
    result = validation.validate_trigger(
        ctx,
        owner=payload.owner,
        repo=payload.repo,
        pr_number=payload.pr_number,
        user_handle=payload.user_handle,
    )
    return success_envelope(result, trace_id_from_request(request))


@router.post("/proposal/validate")
def validate_proposal(payload: ValidationRequest, request: Request, ctx: WorkflowContext = Depends(get_context)):
    result = validation.validate_proposal(
        ctx,
        owner=payload.owner,
        repo=payload.repo,
        pr_number=payload.pr_number,
        user_handle=payload.user_handle,
    )
    return success_envelope(result, trace_id_from_request(request))


@router.post("/approval/validate")
def validate_approval(payload: ValidationRequest, request: Request, ctx: WorkflowContext = Depends(get_context)):
    result = validation.validate_approval(
        ctx,
        owner=payload.owner,
        repo=payload.repo,
        pr_number=payload.pr_number,
        user_handle=payload.user_handle,
    )
    return success_envelope(result, trace_id_from_request(request))


@router.post("/merge/validate")
def validate_merge(payload: ValidationRequest, request: Request, ctx: WorkflowContext = Depends(get_context)):
    result = validation.validate_merge_application(
        ctx,
        owner=payload.owner,
        repo=payload.repo,
        pr_number=payload.pr_number,
        user_handle=payload.user_handle,
    )
    return success_envelope(result, trace_id_from_request(request))


@router.post("/cache/renewal")
def cache_renewal(payload: CacheRenewalRequest, request: Request, ctx: WorkflowContext = Depends(get_context)):
    report = reconciliation.renew_cache(ctx, owner=payload.owner, repo=payload.repo)
    return success_envelope(report, trace_id_from_request(request))
