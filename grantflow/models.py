"""Application document model.

Every type here is an immutable value. Transformations return a new value and
never touch the network; checking external facts (thresholds, allowances,
verifier membership) belongs to the workflow layer.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class AppState(str, Enum):
    SUBMITTED = "Submitted"
    KYC_REQUESTED = "KYCRequested"
    ADDITIONAL_INFO_REQUIRED = "AdditionalInfoRequired"
    ADDITIONAL_INFO_SUBMITTED = "AdditionalInfoSubmitted"
    CHANGES_REQUESTED = "ChangesRequested"
    READY_TO_SIGN = "ReadyToSign"
    START_SIGN_DATACAP = "StartSignDatacap"
    GRANTED = "Granted"
    TOTAL_DATACAP_REACHED = "TotalDatacapReached"
    CHANGING_SP = "ChangingSP"
    ERROR = "Error"

    @property
    def rank(self) -> int | None:
        """Position in the review order; ``None`` for side states."""
        return _STATE_RANK.get(self)

    @property
    def is_side_state(self) -> bool:
        return self.rank is None

    def before(self, other: AppState) -> bool:
        if self.rank is None or other.rank is None:
            return False
        return self.rank < other.rank

    def after(self, other: AppState) -> bool:
        if self.rank is None or other.rank is None:
            return False
        return self.rank > other.rank

    def is_pre_review(self) -> bool:
        return self in PRE_REVIEW_STATES

    @property
    def label(self) -> str:
        return _STATE_LABELS[self]


_STATE_RANK: dict[AppState, int] = {
    AppState.SUBMITTED: 0,
    AppState.KYC_REQUESTED: 1,
    AppState.ADDITIONAL_INFO_REQUIRED: 1,
    AppState.ADDITIONAL_INFO_SUBMITTED: 1,
    AppState.CHANGES_REQUESTED: 2,
    AppState.READY_TO_SIGN: 3,
    AppState.START_SIGN_DATACAP: 4,
    AppState.GRANTED: 5,
    AppState.TOTAL_DATACAP_REACHED: 6,
}

_STATE_LABELS: dict[AppState, str] = {
    AppState.SUBMITTED: "submitted",
    AppState.KYC_REQUESTED: "kyc requested",
    AppState.ADDITIONAL_INFO_REQUIRED: "additional info required",
    AppState.ADDITIONAL_INFO_SUBMITTED: "additional info submitted",
    AppState.CHANGES_REQUESTED: "changes requested",
    AppState.READY_TO_SIGN: "ready to sign",
    AppState.START_SIGN_DATACAP: "start sign datacap",
    AppState.GRANTED: "granted",
    AppState.TOTAL_DATACAP_REACHED: "total datacap reached",
    AppState.CHANGING_SP: "changing sp",
    AppState.ERROR: "error",
}

PRE_REVIEW_STATES = frozenset(
    {
        AppState.SUBMITTED,
        AppState.KYC_REQUESTED,
        AppState.ADDITIONAL_INFO_REQUIRED,
        AppState.ADDITIONAL_INFO_SUBMITTED,
    }
)

ERROR_LABEL = AppState.ERROR.label


@dataclass(frozen=True)
class First:
    def __str__(self) -> str:
        return "First"


@dataclass(frozen=True)
class Refill:
    sequence: int

    def __str__(self) -> str:
        return f"Refill({self.sequence})"


@dataclass(frozen=True)
class Removal:
    def __str__(self) -> str:
        return "Removal"


RequestKind = First | Refill | Removal


@dataclass(frozen=True)
class Signer:
    github_username: str
    signing_address: str
    created_at: str
    message_cid: str
    increase_allowance_cid: str | None = None
    decrease_allowance_cid: str | None = None


@dataclass(frozen=True)
class AllocationRequest:
    id: str
    actor: str
    kind: RequestKind
    amount: str
    is_active: bool = True
    signers: tuple[Signer, ...] = ()
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class SpsChangeRequest:
    id: str
    is_active: bool = True
    allowed_sps: tuple[int, ...] | None = None
    max_deviation: str | None = None
    signers: tuple[Signer, ...] = ()
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class Client:
    name: str
    region: str = ""
    industry: str = ""
    website: str = ""
    role: str = ""


@dataclass(frozen=True)
class Datacap:
    type: str
    total_requested_amount: str
    data_type: str = ""
    single_size_dataset: str = ""
    replicas: int = 0
    weekly_allocation: str = ""


@dataclass(frozen=True)
class LifeCycle:
    state: AppState
    validated_by: str = ""
    validated_at: str = ""
    active_request: str | None = None
    is_active: bool = True
    client_on_chain_address: str = ""
    multisig_address: str = ""
    updated_at: str = ""
    edited: bool = False

    @classmethod
    def submitted(cls, *, client_on_chain_address: str, multisig_address: str, now: str | None = None) -> LifeCycle:
        return cls(
            state=AppState.SUBMITTED,
            client_on_chain_address=client_on_chain_address,
            multisig_address=multisig_address,
            updated_at=now or utcnow_iso(),
        )

    def with_state(self, state: AppState, *, now: str | None = None) -> LifeCycle:
        return replace(self, state=state, updated_at=now or utcnow_iso())

    def finish_governance_review(self, *, actor: str, request_id: str, now: str | None = None) -> LifeCycle:
        stamp = now or utcnow_iso()
        return replace(
            self,
            state=AppState.READY_TO_SIGN,
            validated_by=actor,
            validated_at=stamp,
            active_request=request_id,
            is_active=True,
            updated_at=stamp,
        )

    def start_refill_request(self, *, request_id: str, now: str | None = None) -> LifeCycle:
        return replace(
            self,
            state=AppState.READY_TO_SIGN,
            active_request=request_id,
            is_active=True,
            updated_at=now or utcnow_iso(),
        )

    def start_removal_request(self, *, request_id: str, now: str | None = None) -> LifeCycle:
        """A decrease is proposed with its first signature, so it starts in ``StartSignDatacap``."""
        return replace(
            self,
            state=AppState.START_SIGN_DATACAP,
            active_request=request_id,
            updated_at=now or utcnow_iso(),
        )

    def finish_proposal(self, *, now: str | None = None) -> LifeCycle:
        return self.with_state(AppState.START_SIGN_DATACAP, now=now)

    def finish_approval(self, *, now: str | None = None) -> LifeCycle:
        return replace(self, state=AppState.GRANTED, active_request=None, updated_at=now or utcnow_iso())

    def reached_total_datacap(self, *, now: str | None = None) -> LifeCycle:
        return replace(
            self,
            state=AppState.TOTAL_DATACAP_REACHED,
            is_active=False,
            updated_at=now or utcnow_iso(),
        )

    def move_back_to_governance_review(self, *, now: str | None = None) -> LifeCycle:
        return replace(
            self,
            state=AppState.SUBMITTED,
            validated_by="",
            validated_at="",
            active_request=None,
            updated_at=now or utcnow_iso(),
        )

    def mark_edited(self, edited: bool = True) -> LifeCycle:
        return replace(self, edited=edited)


@dataclass(frozen=True)
class ApplicationFile:
    id: str
    issue_number: str
    client: Client
    datacap: Datacap
    lifecycle: LifeCycle
    allocation: tuple[AllocationRequest, ...] = ()
    sps_change_requests: tuple[SpsChangeRequest, ...] = ()
    client_contract_address: str | None = None
    version: int = 1

    @property
    def type(self) -> str:
        return self.datacap.type

    @property
    def state(self) -> AppState:
        return self.lifecycle.state

    @property
    def edited(self) -> bool:
        return self.lifecycle.edited

    @classmethod
    def new(
        cls,
        *,
        application_id: str,
        issue_number: str,
        client: Client,
        datacap: Datacap,
        client_on_chain_address: str,
        multisig_address: str = "",
        client_contract_address: str | None = None,
    ) -> ApplicationFile:
        return cls(
            id=application_id,
            issue_number=issue_number,
            client=client,
            datacap=datacap,
            lifecycle=LifeCycle.submitted(
                client_on_chain_address=client_on_chain_address,
                multisig_address=multisig_address,
            ),
            client_contract_address=client_contract_address,
        )

    def with_lifecycle(self, lifecycle: LifeCycle) -> ApplicationFile:
        return replace(self, lifecycle=lifecycle)

    def with_allocation(self, allocation: tuple[AllocationRequest, ...], lifecycle: LifeCycle) -> ApplicationFile:
        return replace(self, allocation=allocation, lifecycle=lifecycle)

    def with_sps_change_requests(
        self,
        requests: tuple[SpsChangeRequest, ...],
        lifecycle: LifeCycle | None = None,
    ) -> ApplicationFile:
        return replace(self, sps_change_requests=requests, lifecycle=lifecycle or self.lifecycle)

    def reached_total_datacap(self) -> ApplicationFile:
        return replace(self, lifecycle=self.lifecycle.reached_total_datacap())

    def move_back_to_governance_review(self) -> ApplicationFile:
        """Return to ``Submitted``, discarding the pending request and its signers.

        Closed requests stay as history.
        """
        allocation = tuple(item for item in self.allocation if not item.is_active)
        return replace(
            self,
            allocation=allocation,
            lifecycle=self.lifecycle.move_back_to_governance_review(),
        )


def invariant_violations(app: ApplicationFile) -> list[str]:
    problems: list[str] = []
    active = [item for item in app.allocation if item.is_active]
    if len(active) > 1:
        problems.append("more than one active allocation request")
    active_id = app.lifecycle.active_request
    if active_id is not None:
        target = next((item for item in app.allocation if item.id == active_id), None)
        if target is None:
            problems.append(f"active request {active_id} is missing from allocation")
        elif not target.is_active:
            problems.append(f"active request {active_id} is closed")
    if len([item for item in app.sps_change_requests if item.is_active]) > 1:
        problems.append("more than one active storage provider change request")
    return problems


@dataclass(frozen=True)
class Allocator:
    owner: str
    repo: str
    multisig_address: str = ""
    multisig_threshold: int | None = None
    verifiers_gh_handles: str = ""
    address: str | None = None

    def verifiers(self) -> list[str]:
        return [x.strip().lower() for x in self.verifiers_gh_handles.split(",") if x.strip()]

    def is_verifier(self, github_username: str) -> bool:
        handle = github_username.strip().lower()
        return bool(handle) and handle in self.verifiers()
