from __future__ import annotations

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from grantflow.context import WorkflowContext, build_context_from_env
from grantflow.errors import ApiError
from grantflow.routes import applications, validation
from grantflow.routes._deps import error_response, request_id_from_request, trace_id_from_request
from grantflow.schemas import success_envelope
from grantflow.security import JwtSecurityConfig, parse_and_validate_bearer_token

logger = logging.getLogger(__name__)


def _requires_auth(request: Request) -> bool:
    return request.method == "POST" and request.url.path.startswith("/application")


def create_app(
    context: WorkflowContext | None = None,
    *,
    security_cfg: JwtSecurityConfig | None = None,
) -> FastAPI:
    app = FastAPI(title="Grantflow API", version="0.1.0")
    app.state.workflow_context = context or build_context_from_env()
    security_cfg = security_cfg or JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = None
        try:
            if security_cfg.enabled and _requires_auth(request):
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
            response = await call_next(request)
        except ApiError as exc:
            logger.warning(
                "request_blocked path=%s code=%s trace_id=%s",
                request.url.path,
                exc.code,
                request.state.trace_id,
            )
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.error_class == "collaborator":
            logger.warning(
                "collaborator_failure path=%s code=%s message=%s trace_id=%s",
                request.url.path,
                exc.code,
                exc.message,
                trace_id_from_request(request),
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(validation.router)
    app.include_router(applications.router)
    return app


app = create_app()
