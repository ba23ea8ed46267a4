from __future__ import annotations

import uuid

from fastapi import Query, Request
from fastapi.responses import JSONResponse

from grantflow.context import WorkflowContext
from grantflow.schemas import error_envelope
from grantflow.security import require_subject


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )


def get_context(request: Request) -> WorkflowContext:
    return request.app.state.workflow_context


def acting_verifier(request: Request, github_username: str = Query(min_length=1)) -> str:
    require_subject(
        auth_subject=getattr(request.state, "auth_subject", None),
        github_username=github_username,
    )
    return github_username
