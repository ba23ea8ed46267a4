from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class IllegalTransition(ApiError):
    """State guard, lookup, or quorum rule rejected the request; nothing was written."""

    def __init__(self, *, code: str = "ILLEGAL_TRANSITION", message: str, http_status: int = 409) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=http_status,
        )


class CollaboratorFailure(ApiError):
    """A hosting-platform, cache, or blockchain call failed."""

    def __init__(
        self,
        *,
        code: str,
        message: str,
        http_status: int = 502,
        retryable: bool = True,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="collaborator",
            retryable=retryable,
            http_status=http_status,
        )


def not_found(application_id: str) -> IllegalTransition:
    return IllegalTransition(
        code="APPLICATION_NOT_FOUND",
        message=f"application {application_id} not found",
        http_status=404,
    )


def illegal_state(*, application_id: str, operation: str, state: str) -> IllegalTransition:
    return IllegalTransition(
        message=f"application {application_id} cannot {operation} from state {state}",
    )


def duplicate_signature(*, request_id: str, signer: str) -> IllegalTransition:
    return IllegalTransition(
        code="DUPLICATE_SIGNATURE",
        message=f"signer {signer} already approved request {request_id}",
    )


def quorum_already_met(*, request_id: str, threshold: int) -> IllegalTransition:
    return IllegalTransition(
        code="QUORUM_ALREADY_MET",
        message=f"request {request_id} already has {threshold} signatures",
    )
