from __future__ import annotations

import logging

from grantflow.errors import ApiError
from grantflow.models import ERROR_LABEL, AppState, ApplicationFile

logger = logging.getLogger(__name__)

_COMMENTS: dict[AppState, str] = {
    AppState.SUBMITTED: "Application is waiting for governance review.",
    AppState.KYC_REQUESTED: "KYC has been requested from the client.",
    AppState.ADDITIONAL_INFO_REQUIRED: "Additional information is required to continue the review.",
    AppState.ADDITIONAL_INFO_SUBMITTED: "Additional information was submitted and is waiting for review.",
    AppState.CHANGES_REQUESTED: "Changes were requested on this application.",
    AppState.READY_TO_SIGN: "Application is ready to sign.",
    AppState.START_SIGN_DATACAP: "Datacap request has been proposed and is waiting for approvals.",
    AppState.GRANTED: "Datacap request has been granted.",
    AppState.TOTAL_DATACAP_REACHED: "The total requested datacap has been granted.",
    AppState.CHANGING_SP: "A storage provider change is waiting for approvals.",
    AppState.ERROR: "The application record could not be read and needs manual attention.",
}


def commit_message(*, operation: str, application_id: str, actor: str, from_state: AppState, to_state: AppState) -> str:
    if from_state == to_state:
        return f"{operation}: {application_id} by {actor or 'system'} ({to_state.value})"
    return f"{operation}: {application_id} by {actor or 'system'} ({from_state.value} -> {to_state.value})"


def state_comment(app: ApplicationFile, *, actor: str = "", note: str = "") -> str:
    lines = [_COMMENTS[app.state]]
    active = next((x for x in app.allocation if x.is_active), None)
    if active is not None:
        lines.append(f"Request `{active.id}` ({active.kind}) for {active.amount}, {len(active.signers)} signature(s).")
    if actor:
        lines.append(f"Updated by @{actor}.")
    if note:
        lines.append("")
        lines.append(note)
    return "\n".join(lines)


def _issue_number(app: ApplicationFile) -> int | None:
    try:
        return int(str(app.issue_number).strip())
    except ValueError:
        logger.warning("issue_number_invalid application_id=%s issue_number=%s", app.id, app.issue_number)
        return None


def notify(platform, app: ApplicationFile, *, actor: str = "", note: str = "") -> None:
    """Comment on the originating issue and replace its status label."""
    number = _issue_number(app)
    if number is None:
        return
    platform.add_comment_to_issue(number, state_comment(app, actor=actor, note=note))
    platform.replace_issue_labels(number, [app.state.label])


def mark_error(platform, issue_number: str) -> None:
    try:
        number = int(str(issue_number).strip())
    except ValueError:
        return
    try:
        platform.add_issue_labels(number, [ERROR_LABEL])
    except ApiError as exc:
        logger.warning("error_label_failed issue_number=%s code=%s", number, exc.code)
