from __future__ import annotations

from dataclasses import replace

import pytest

from conftest import ALLOCATOR_ADDRESS, OWNER, REPO
from grantflow import reconciliation, validation, workflow
from grantflow.errors import CollaboratorFailure, IllegalTransition
from grantflow.models import AppState, Client, Datacap, Refill

PATH = "applications/app-1.json"
BRANCH = "Application/app-1"


def test_submit_opens_branch_pull_request_and_cache_row(ctx, platform, submit):
    app = submit()

    assert app.state == AppState.SUBMITTED
    pull = platform.get_pull_request_by_head(BRANCH)
    assert pull is not None
    assert pull.title == "Application:app-1:Acme Data"
    assert pull.body == "resolves #42"
    assert platform.get_file(PATH, BRANCH) is not None
    assert platform.get_file(PATH, platform.base_branch) is None
    row = ctx.applications.get(application_id="app-1", owner=OWNER, repo=REPO)
    assert row["pr_number"] == pull.number
    assert row["issue_number"] == 42
    assert platform.issue(42).labels == ["submitted"]


def test_submit_twice_is_rejected(submit):
    submit()
    with pytest.raises(IllegalTransition) as exc:
        submit()
    assert exc.value.code == "ILLEGAL_TRANSITION"


def test_submit_for_unknown_allocator_is_rejected(ctx):
    with pytest.raises(IllegalTransition) as exc:
        workflow.submit_application(
            ctx,
            application_id="app-9",
            owner="nobody",
            repo="nothing",
            issue_number="1",
            client=Client(name="x"),
            datacap=Datacap(type="ldn-v3", total_requested_amount="1TiB"),
            client_on_chain_address="f1x",
        )
    assert exc.value.code == "ALLOCATOR_NOT_FOUND"
    assert exc.value.http_status == 404


def test_kyc_then_governance_review(ctx, platform, submit):
    submit()

    kyc = workflow.request_kyc(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="bob")
    assert kyc.state == AppState.KYC_REQUESTED
    assert platform.issue(42).labels == ["kyc requested"]

    ready = workflow.complete_governance_review(
        ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="bob", allocation_amount="5TiB"
    )
    assert ready.state == AppState.READY_TO_SIGN
    assert ready.allocation[0].amount == "5TiB"
    assert ready.allocation[0].actor == "bob"


def test_governance_review_cannot_run_twice(ctx, triggered):
    triggered()

    with pytest.raises(IllegalTransition) as exc:
        workflow.complete_governance_review(
            ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="bob", allocation_amount="5TiB"
        )
    assert exc.value.code == "ILLEGAL_TRANSITION"


def test_governance_review_requires_verifier(ctx, submit):
    submit()

    with pytest.raises(IllegalTransition) as exc:
        workflow.complete_governance_review(
            ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="mallory", allocation_amount="5TiB"
        )
    assert exc.value.code == "VERIFIER_NOT_AUTHORIZED"


@pytest.mark.parametrize(
    ("amount", "code"),
    [("200TiB", "EXCEEDS_CEILING"), ("a lot", "INVALID_AMOUNT"), ("2PiB", "EXCEEDS_CEILING")],
)
def test_governance_review_rejects_bad_amounts(ctx, submit, amount, code):
    submit()

    with pytest.raises(IllegalTransition) as exc:
        workflow.complete_governance_review(
            ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice", allocation_amount=amount
        )
    assert exc.value.code == code


def test_governance_review_requires_allowance(ctx, submit):
    submit()
    ctx.blockchain.allowances[ALLOCATOR_ADDRESS] = "5TiB"

    with pytest.raises(IllegalTransition) as exc:
        workflow.complete_governance_review(
            ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice", allocation_amount="10TiB"
        )

    assert exc.value.code == "INSUFFICIENT_ALLOWANCE"
    loaded = workflow.load_application(ctx, application_id="app-1", owner=OWNER, repo=REPO)
    assert loaded.app.state == AppState.SUBMITTED


def test_governance_review_surfaces_allowance_lookup_failure(ctx, submit):
    submit()
    ctx.blockchain.allowances.clear()

    with pytest.raises(CollaboratorFailure) as exc:
        workflow.complete_governance_review(
            ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice", allocation_amount="10TiB"
        )

    assert exc.value.code == "BLOCKCHAIN_REQUEST_FAILED"
    assert exc.value.retryable is True


def test_decline_closes_pull_request_issue_and_cache_row(ctx, platform, submit):
    submit()

    workflow.decline_application(
        ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice", reason="Out of scope."
    )

    assert platform.get_pull_request(1).state == "closed"
    issue = platform.issue(42)
    assert issue.state == "closed"
    assert "Out of scope." in issue.comments[-1]
    assert ctx.applications.get(application_id="app-1", owner=OWNER, repo=REPO) is None
    with pytest.raises(IllegalTransition) as exc:
        workflow.load_application(ctx, application_id="app-1", owner=OWNER, repo=REPO)
    assert exc.value.code == "APPLICATION_NOT_FOUND"


def test_decline_is_rejected_after_review(ctx, triggered):
    triggered()

    with pytest.raises(IllegalTransition) as exc:
        workflow.decline_application(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice")

    assert exc.value.code == "ILLEGAL_TRANSITION"


def test_additional_info_round_trip(ctx, platform, submit):
    submit()

    asked = workflow.additional_info_required(
        ctx,
        application_id="app-1",
        owner=OWNER,
        repo=REPO,
        github_username="alice",
        verifier_message="Please share the dataset sample.",
    )
    assert asked.state == AppState.ADDITIONAL_INFO_REQUIRED
    assert "Please share the dataset sample." in platform.issue(42).comments[-1]

    answered = workflow.update_from_issue(
        ctx, application_id="app-1", owner=OWNER, repo=REPO, client=Client(name="Acme Data Ltd")
    )
    assert answered.state == AppState.ADDITIONAL_INFO_SUBMITTED
    assert answered.client.name == "Acme Data Ltd"
    assert answered.edited is False


def test_update_from_issue_without_changes_does_not_write(ctx, platform, submit):
    submit()
    writes = platform.calls.count("update_file_content")

    app = workflow.update_from_issue(ctx, application_id="app-1", owner=OWNER, repo=REPO)

    assert app.state == AppState.SUBMITTED
    assert platform.calls.count("update_file_content") == writes


def test_issue_edit_during_signing_marks_edited_until_approved(ctx, triggered):
    triggered()

    edited = workflow.update_from_issue(
        ctx,
        application_id="app-1",
        owner=OWNER,
        repo=REPO,
        datacap=Datacap(type="ldn-v3", total_requested_amount="100TiB", replicas=5),
    )
    assert edited.edited is True
    assert edited.state == AppState.READY_TO_SIGN
    assert validation.validate_trigger(ctx, owner=OWNER, repo=REPO, pr_number=1) is False

    approved = workflow.approve_changes(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="bob")
    assert approved.edited is False
    assert approved.datacap.replicas == 5

    with pytest.raises(IllegalTransition):
        workflow.approve_changes(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="bob")


def test_refill_opens_new_pull_request_after_merge(ctx, platform, granted, signer):
    granted()
    assert validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=1) is True

    app = workflow.refill(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice", amount="20TiB")

    assert app.state == AppState.READY_TO_SIGN
    request = app.allocation[-1]
    assert request.kind == Refill(1)
    assert request.is_active is True
    assert app.lifecycle.active_request == request.id
    pull = platform.get_pull_request_by_head("Application/app-1/refill-1")
    assert pull is not None
    assert ctx.applications.list_merged(owner=OWNER, repo=REPO) == []
    active = ctx.applications.list_active(owner=OWNER, repo=REPO)
    assert [row["pr_number"] for row in active] == [pull.number]

    workflow.complete_new_application_proposal(
        ctx, application_id="app-1", owner=OWNER, repo=REPO, signer=signer("alice"), request_id=request.id
    )
    done = workflow.complete_new_application_approval(
        ctx, application_id="app-1", owner=OWNER, repo=REPO, signer=signer("carol"), request_id=request.id
    )
    assert done.state == AppState.GRANTED
    assert [item.is_active for item in done.allocation] == [False, False]


def test_refill_is_bounded_by_total_requested(ctx, granted):
    granted()
    validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=1)

    with pytest.raises(IllegalTransition) as exc:
        workflow.refill(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice", amount="95TiB")

    assert exc.value.code == "EXCEEDS_CEILING"


def test_refill_requires_merged_application(ctx, granted):
    granted()

    with pytest.raises(IllegalTransition) as exc:
        workflow.refill(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice", amount="5TiB")

    assert exc.value.code == "ILLEGAL_TRANSITION"


def test_total_datacap_reached_on_merged_application_goes_through_pull_request(ctx, platform, granted):
    granted()
    validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=1)
    base_sha = platform.get_file(PATH, platform.base_branch).sha

    app = workflow.total_datacap_reached(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice")

    assert app.state == AppState.TOTAL_DATACAP_REACHED
    assert app.lifecycle.is_active is False
    assert platform.get_file(PATH, platform.base_branch).sha == base_sha
    pull = platform.get_pull_request_by_head("Application/app-1/total-datacap-reached")
    assert pull is not None
    assert ctx.applications.list_merged(owner=OWNER, repo=REPO) == []

    assert validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=pull.number) is True
    merged = workflow.list_merged(ctx, owner=OWNER, repo=REPO)
    assert [x.state for x in merged] == [AppState.TOTAL_DATACAP_REACHED]


def test_storage_provider_change_on_merged_application_opens_pull_request(ctx, platform, granted, signer):
    granted()
    validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=1)
    base_sha = platform.get_file(PATH, platform.base_branch).sha

    changing = workflow.complete_sps_change_proposal(
        ctx, application_id="app-1", owner=OWNER, repo=REPO, signer=signer("alice"), allowed_sps=[1, 2]
    )

    assert changing.state == AppState.CHANGING_SP
    assert platform.get_file(PATH, platform.base_branch).sha == base_sha
    pull = platform.get_pull_request_by_head("Application/app-1/sps-change-1")
    assert pull is not None
    assert [row["pr_number"] for row in ctx.applications.list_active(owner=OWNER, repo=REPO)] == [pull.number]
    assert ctx.applications.list_merged(owner=OWNER, repo=REPO) == []
    assert validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=pull.number) is False

    done = workflow.complete_sps_change_approval(
        ctx,
        application_id="app-1",
        owner=OWNER,
        repo=REPO,
        signer=signer("bob"),
        request_id=changing.sps_change_requests[0].id,
    )
    assert done.state == AppState.GRANTED
    assert validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=pull.number) is True
    assert platform.get_file(PATH, platform.base_branch).sha != base_sha
    merged = workflow.list_merged(ctx, owner=OWNER, repo=REPO)
    assert merged[0].sps_change_requests[0].allowed_sps == (1, 2)


def test_issue_edit_after_merge_waits_for_approval_on_its_pull_request(ctx, platform, granted):
    granted()
    validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=1)
    base_sha = platform.get_file(PATH, platform.base_branch).sha

    edited = workflow.update_from_issue(
        ctx, application_id="app-1", owner=OWNER, repo=REPO, client=Client(name="Acme Data Ltd")
    )

    assert edited.edited is True
    assert platform.get_file(PATH, platform.base_branch).sha == base_sha
    pulls = platform.list_pull_requests()
    assert len(pulls) == 1
    assert pulls[0].head_ref.startswith("Application/app-1/update-")
    assert validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=pulls[0].number) is False

    workflow.approve_changes(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="bob")
    assert validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=pulls[0].number) is True
    assert workflow.get_application(ctx, application_id="app-1", owner=OWNER, repo=REPO).client.name == "Acme Data Ltd"


def test_persist_refuses_document_with_two_active_requests(ctx, platform, triggered):
    triggered()
    loaded = workflow.load_application(ctx, application_id="app-1", owner=OWNER, repo=REPO)
    extra = replace(loaded.app.allocation[0], id="second")
    broken = loaded.app.with_allocation((*loaded.app.allocation, extra), loaded.app.lifecycle)
    writes = platform.calls.count("update_file_content")

    with pytest.raises(IllegalTransition) as exc:
        workflow.persist(ctx, loaded, broken, operation="test", actor="alice")

    assert exc.value.code == "DOCUMENT_INVARIANT_VIOLATED"
    assert platform.calls.count("update_file_content") == writes
    assert platform.get_file(PATH, BRANCH).sha == loaded.sha


def test_stale_write_is_rejected_by_sha(ctx, submit):
    submit()
    stale = workflow.load_application(ctx, application_id="app-1", owner=OWNER, repo=REPO)
    workflow.request_kyc(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice")

    with pytest.raises(CollaboratorFailure) as exc:
        workflow.persist(ctx, stale, stale.app, operation="noop", actor="alice")

    assert exc.value.code == "GITHUB_SHA_CONFLICT"
    current = workflow.load_application(ctx, application_id="app-1", owner=OWNER, repo=REPO)
    assert current.app.state == AppState.KYC_REQUESTED


def test_cache_failure_does_not_fail_transition_and_is_repaired(ctx, platform, submit, monkeypatch):
    submit()

    def _boom(**kwargs):
        raise CollaboratorFailure(code="CACHE_REQUEST_FAILED", message="cache down")

    monkeypatch.setattr(ctx.applications, "update", _boom)
    monkeypatch.setattr(ctx.applications, "create", _boom)
    app = workflow.request_kyc(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice")
    monkeypatch.undo()

    assert app.state == AppState.KYC_REQUESTED
    cached = workflow.get_application(ctx, application_id="app-1", owner=OWNER, repo=REPO)
    assert cached.state == AppState.SUBMITTED

    platform.set_last_modification_date(PATH, BRANCH, "2999-01-01T00:00:00+00:00")
    report = reconciliation.refresh_active(ctx, owner=OWNER, repo=REPO)

    assert report["updated"] == ["app-1"]
    cached = workflow.get_application(ctx, application_id="app-1", owner=OWNER, repo=REPO)
    assert cached.state == AppState.KYC_REQUESTED


def test_corrupted_document_is_flagged_on_issue(ctx, platform, submit):
    submit()
    current = platform.get_file(PATH, BRANCH)
    platform.update_file_content(path=PATH, message="oops", content="{not json", branch=BRANCH, sha=current.sha)

    with pytest.raises(CollaboratorFailure) as exc:
        workflow.request_kyc(ctx, application_id="app-1", owner=OWNER, repo=REPO, github_username="alice")

    assert exc.value.code == "DOCUMENT_CORRUPTED"
    assert "error" in platform.issue(42).labels


def test_cache_reads_split_active_and_merged(ctx, submit, granted):
    granted("app-1")
    validation.validate_merge_application(ctx, owner=OWNER, repo=REPO, pr_number=1)
    submit("app-2", issue_number="43")

    assert [x.id for x in workflow.list_active(ctx, owner=OWNER, repo=REPO)] == ["app-2"]
    assert [x.id for x in workflow.list_merged(ctx, owner=OWNER, repo=REPO)] == ["app-1"]
    with pytest.raises(IllegalTransition) as exc:
        workflow.get_application(ctx, application_id="missing", owner=OWNER, repo=REPO)
    assert exc.value.code == "APPLICATION_NOT_FOUND"
