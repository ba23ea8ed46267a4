"""Converge the cache toward the canonical store.

Two passes, one per partition. Each builds a snapshot of what the canonical
store holds, diffs it against the cache rows and writes only the cache:
rows missing upstream are deleted, new documents are inserted, and documents
whose last commit is newer than the row are overwritten. Rows take the
commit timestamp as ``updated_at`` so a second run finds nothing to do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from grantflow.clients.platform import HostingPlatform
from grantflow.codec import MalformedDocument, loads_application
from grantflow.context import WorkflowContext
from grantflow.models import ApplicationFile
from grantflow.repositories import application_row
from grantflow.workflow import application_id_from_path, is_application_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CanonicalSnapshot:
    app: ApplicationFile
    pr_number: int
    sha: str
    path: str
    modified_at: str


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def canonical_is_newer(canonical: str, cached: Any) -> bool:
    """An unknown canonical date never wins, so rows are not rewritten on every pass."""
    canonical_at = _parse_timestamp(canonical)
    if canonical_at is None:
        return False
    cached_at = _parse_timestamp(cached)
    if cached_at is None:
        return True
    return canonical_at > cached_at


def _new_report() -> dict[str, list[str]]:
    return {"created": [], "updated": [], "deleted": [], "skipped": []}


def _snapshot(platform: HostingPlatform, *, path: str, ref: str, pr_number: int) -> CanonicalSnapshot | None:
    repo_file = platform.get_file(path, ref)
    if repo_file is None:
        return None
    try:
        app = loads_application(repo_file.content)
    except MalformedDocument as exc:
        logger.warning("reconcile_document_skipped path=%s ref=%s error=%s", path, ref, exc)
        return None
    return CanonicalSnapshot(
        app=app,
        pr_number=pr_number,
        sha=repo_file.sha,
        path=path,
        modified_at=platform.get_last_modification_date(path, ref),
    )


def _open_application_paths(platform: HostingPlatform, folder: str) -> list[tuple[int, str, str]]:
    found: list[tuple[int, str, str]] = []
    for pull in platform.list_pull_requests():
        for path in platform.list_pull_request_files(pull.number):
            if is_application_path(folder, path):
                found.append((pull.number, pull.head_ref, path))
    return found


def _apply_diff(
    ctx: WorkflowContext,
    *,
    owner: str,
    repo: str,
    canonical: dict[tuple[str, int], CanonicalSnapshot],
    cached_rows: list[dict[str, Any]],
    skipped_ids: set[str],
    report: dict[str, list[str]],
) -> None:
    cached = {(str(row["id"]), int(row["pr_number"])): row for row in cached_rows}

    for key in cached:
        if key in canonical or key[0] in skipped_ids:
            continue
        ctx.applications.delete(application_id=key[0], owner=owner, repo=repo, pr_number=key[1])
        report["deleted"].append(key[0])

    for key, snap in canonical.items():
        row = application_row(
            app=snap.app,
            owner=owner,
            repo=repo,
            pr_number=snap.pr_number,
            sha=snap.sha,
            path=snap.path,
            updated_at=snap.modified_at,
        )
        current = cached.get(key)
        if current is None:
            ctx.applications.create(row=row)
            report["created"].append(key[0])
        elif canonical_is_newer(snap.modified_at, current.get("updated_at")):
            ctx.applications.update(row=row)
            report["updated"].append(key[0])


def refresh_active(ctx: WorkflowContext, *, owner: str, repo: str) -> dict[str, list[str]]:
    platform = ctx.platform(owner, repo)
    report = _new_report()
    canonical: dict[tuple[str, int], CanonicalSnapshot] = {}
    skipped: set[str] = set()
    for pr_number, head_ref, path in _open_application_paths(platform, ctx.settings.applications_folder):
        snap = _snapshot(platform, path=path, ref=head_ref, pr_number=pr_number)
        if snap is None:
            skipped.add(application_id_from_path(path))
            report["skipped"].append(application_id_from_path(path))
            continue
        canonical[(snap.app.id, pr_number)] = snap

    _apply_diff(
        ctx,
        owner=owner,
        repo=repo,
        canonical=canonical,
        cached_rows=ctx.applications.list_active(owner=owner, repo=repo),
        skipped_ids=skipped,
        report=report,
    )
    logger.info(
        "reconcile_active_done owner=%s repo=%s created=%s updated=%s deleted=%s skipped=%s",
        owner,
        repo,
        len(report["created"]),
        len(report["updated"]),
        len(report["deleted"]),
        len(report["skipped"]),
    )
    return report


def refresh_merged(ctx: WorkflowContext, *, owner: str, repo: str) -> dict[str, list[str]]:
    """Reconcile the merged partition; ids with an open pull request belong to the active pass."""
    platform = ctx.platform(owner, repo)
    folder = ctx.settings.applications_folder
    report = _new_report()
    open_ids = {application_id_from_path(path) for _, _, path in _open_application_paths(platform, folder)}
    canonical: dict[tuple[str, int], CanonicalSnapshot] = {}
    skipped: set[str] = set()
    for path in platform.list_files(folder, platform.base_branch):
        if not is_application_path(folder, path):
            continue
        if application_id_from_path(path) in open_ids:
            continue
        snap = _snapshot(platform, path=path, ref=platform.base_branch, pr_number=0)
        if snap is None:
            skipped.add(application_id_from_path(path))
            report["skipped"].append(application_id_from_path(path))
            continue
        canonical[(snap.app.id, 0)] = snap

    _apply_diff(
        ctx,
        owner=owner,
        repo=repo,
        canonical=canonical,
        cached_rows=ctx.applications.list_merged(owner=owner, repo=repo),
        skipped_ids=skipped,
        report=report,
    )
    logger.info(
        "reconcile_merged_done owner=%s repo=%s created=%s updated=%s deleted=%s skipped=%s",
        owner,
        repo,
        len(report["created"]),
        len(report["updated"]),
        len(report["deleted"]),
        len(report["skipped"]),
    )
    return report


def renew_cache(ctx: WorkflowContext, *, owner: str, repo: str) -> dict[str, dict[str, list[str]]]:
    return {
        "active": refresh_active(ctx, owner=owner, repo=repo),
        "merged": refresh_merged(ctx, owner=owner, repo=repo),
    }
