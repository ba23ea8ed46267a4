from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from grantflow.models import Client, Datacap, Signer


class MessageCids(BaseModel):
    message_cid: str = Field(min_length=1)
    increase_allowance_cid: str | None = None
    decrease_allowance_cid: str | None = None


class SignerPayload(BaseModel):
    signing_address: str = Field(min_length=1)
    created_at: str
    message_cids: MessageCids

    def to_signer(self, github_username: str) -> Signer:
        return Signer(
            github_username=github_username,
            signing_address=self.signing_address,
            created_at=self.created_at,
            message_cid=self.message_cids.message_cid,
            increase_allowance_cid=self.message_cids.increase_allowance_cid,
            decrease_allowance_cid=self.message_cids.decrease_allowance_cid,
        )


class ClientPayload(BaseModel):
    name: str = Field(min_length=1)
    region: str = ""
    industry: str = ""
    website: str = ""
    role: str = ""

    def to_model(self) -> Client:
        return Client(**self.model_dump())


class DatacapPayload(BaseModel):
    type: str = "ldn-v3"
    total_requested_amount: str = Field(min_length=1)
    data_type: str = ""
    single_size_dataset: str = ""
    replicas: int = Field(default=0, ge=0)
    weekly_allocation: str = ""

    def to_model(self) -> Datacap:
        return Datacap(**self.model_dump())


class SubmitApplicationRequest(BaseModel):
    id: str = Field(min_length=1)
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)
    issue_number: str = Field(min_length=1)
    client: ClientPayload
    datacap: DatacapPayload
    client_on_chain_address: str = ""
    client_contract_address: str | None = None


class TriggerRequest(BaseModel):
    allocation_amount: str = Field(min_length=1)
    client_contract_address: str | None = None


class ProposeRequest(BaseModel):
    signer: SignerPayload
    request_id: str = Field(min_length=1)
    new_allocation_amount: str | None = None


class ApproveRequest(BaseModel):
    signer: SignerPayload
    request_id: str = Field(min_length=1)
    new_allocation_amount: str | None = None


class StorageProvidersProposeRequest(BaseModel):
    signer: SignerPayload
    allowed_sps: list[int] | None = None
    max_deviation: str | None = None


class StorageProvidersApproveRequest(BaseModel):
    signer: SignerPayload
    request_id: str = Field(min_length=1)


class DecreaseAllowanceProposeRequest(BaseModel):
    signer: SignerPayload
    amount_to_decrease: str = Field(min_length=1)
    reason_for_decrease: str = ""


class DecreaseAllowanceApproveRequest(BaseModel):
    signer: SignerPayload
    request_id: str = Field(min_length=1)


class DeclineRequest(BaseModel):
    reason: str = ""


class AdditionalInfoRequest(BaseModel):
    verifier_message: str = ""


class UpdateFromIssueRequest(BaseModel):
    client: ClientPayload | None = None
    datacap: DatacapPayload | None = None


class RefillRequest(BaseModel):
    amount: str = Field(min_length=1)


class ValidationRequest(BaseModel):
    pr_number: int = Field(ge=1)
    user_handle: str = ""
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)


class CacheRenewalRequest(BaseModel):
    owner: str = Field(min_length=1)
    repo: str = Field(min_length=1)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
