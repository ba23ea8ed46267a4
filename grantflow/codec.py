from __future__ import annotations

import json
import re
from typing import Any

from jsonschema import ValidationError, validate

from grantflow.models import (
    AllocationRequest,
    AppState,
    ApplicationFile,
    Client,
    Datacap,
    First,
    LifeCycle,
    Refill,
    Removal,
    RequestKind,
    Signer,
    SpsChangeRequest,
)


class MalformedDocument(ValueError):
    pass


_SIGNER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["Github Username", "Signing Address", "Created At", "Message CID"],
    "properties": {
        "Github Username": {"type": "string"},
        "Signing Address": {"type": "string"},
        "Created At": {"type": "string"},
        "Message CID": {"type": "string"},
        "Increase allowance CID": {"type": ["string", "null"]},
        "Decrease allowance CID": {"type": ["string", "null"]},
    },
}

APPLICATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["ID", "Issue Number", "Client", "Datacap", "Lifecycle"],
    "properties": {
        "Version": {"type": "integer"},
        "ID": {"type": "string", "minLength": 1},
        "Issue Number": {"type": "string"},
        "Client": {
            "type": "object",
            "required": ["Name"],
            "properties": {"Name": {"type": "string"}},
        },
        "Datacap": {
            "type": "object",
            "required": ["Type", "Total Requested Amount"],
            "properties": {
                "Type": {"type": "string"},
                "Total Requested Amount": {"type": "string"},
                "Replicas": {"type": "integer", "minimum": 0},
            },
        },
        "Lifecycle": {
            "type": "object",
            "required": ["State"],
            "properties": {
                "State": {"enum": [state.value for state in AppState]},
                "Validated At": {"type": "string"},
                "Validated By": {"type": "string"},
                "Active Request ID": {"type": ["string", "null"]},
                "Active": {"type": "boolean"},
                "edited": {"type": ["boolean", "null"]},
            },
        },
        "Allocation Requests": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["ID", "Request Type", "Active", "Allocation Amount"],
                "properties": {
                    "ID": {"type": "string"},
                    "Request Type": {"type": "string", "pattern": r"^(First|Removal|Refill\(\d+\))$"},
                    "Active": {"type": "boolean"},
                    "Allocation Amount": {"type": "string"},
                    "Signers": {"type": "array", "items": _SIGNER_SCHEMA},
                },
            },
        },
        "Storage Providers Change Requests": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["ID", "Active"],
                "properties": {
                    "ID": {"type": "string"},
                    "Active": {"type": "boolean"},
                    "Allowed SPs": {"type": ["array", "null"], "items": {"type": "integer"}},
                    "Max Deviation": {"type": ["string", "null"]},
                    "Signers": {"type": "array", "items": _SIGNER_SCHEMA},
                },
            },
        },
        "Client Contract Address": {"type": ["string", "null"]},
    },
}

_REFILL_RE = re.compile(r"^Refill\((\d+)\)$")


def parse_request_kind(raw: str) -> RequestKind:
    if raw == "First":
        return First()
    if raw == "Removal":
        return Removal()
    match = _REFILL_RE.match(raw)
    if match is not None:
        return Refill(sequence=int(match.group(1)))
    raise MalformedDocument(f"unknown request type: {raw}")


def format_request_kind(kind: RequestKind) -> str:
    if isinstance(kind, First):
        return "First"
    if isinstance(kind, Refill):
        return f"Refill({kind.sequence})"
    if isinstance(kind, Removal):
        return "Removal"
    raise TypeError(f"unsupported request kind: {kind!r}")


def _signer_to_dict(signer: Signer) -> dict[str, Any]:
    data = {
        "Github Username": signer.github_username,
        "Signing Address": signer.signing_address,
        "Created At": signer.created_at,
        "Message CID": signer.message_cid,
        "Increase allowance CID": signer.increase_allowance_cid,
    }
    # only removal signatures carry it
    if signer.decrease_allowance_cid is not None:
        data["Decrease allowance CID"] = signer.decrease_allowance_cid
    return data


def _signer_from_dict(data: dict[str, Any]) -> Signer:
    return Signer(
        github_username=str(data["Github Username"]),
        signing_address=str(data["Signing Address"]),
        created_at=str(data["Created At"]),
        message_cid=str(data["Message CID"]),
        increase_allowance_cid=data.get("Increase allowance CID"),
        decrease_allowance_cid=data.get("Decrease allowance CID"),
    )


def application_to_dict(app: ApplicationFile) -> dict[str, Any]:
    lifecycle = app.lifecycle
    return {
        "Version": app.version,
        "ID": app.id,
        "Issue Number": app.issue_number,
        "Client": {
            "Name": app.client.name,
            "Region": app.client.region,
            "Industry": app.client.industry,
            "Website": app.client.website,
            "Role": app.client.role,
        },
        "Datacap": {
            "Type": app.datacap.type,
            "Data Type": app.datacap.data_type,
            "Total Requested Amount": app.datacap.total_requested_amount,
            "Single Size Dataset": app.datacap.single_size_dataset,
            "Replicas": app.datacap.replicas,
            "Weekly Allocation": app.datacap.weekly_allocation,
        },
        "Lifecycle": {
            "State": lifecycle.state.value,
            "Validated At": lifecycle.validated_at,
            "Validated By": lifecycle.validated_by,
            "Active Request ID": lifecycle.active_request,
            "Updated At": lifecycle.updated_at,
            "Active": lifecycle.is_active,
            "On Chain Address": lifecycle.client_on_chain_address,
            "Multisig Address": lifecycle.multisig_address,
            "edited": lifecycle.edited,
        },
        "Allocation Requests": [
            {
                "ID": item.id,
                "Request Type": format_request_kind(item.kind),
                "Actor": item.actor,
                "Created At": item.created_at,
                "Updated At": item.updated_at,
                "Active": item.is_active,
                "Allocation Amount": item.amount,
                "Signers": [_signer_to_dict(x) for x in item.signers],
            }
            for item in app.allocation
        ],
        "Storage Providers Change Requests": [
            {
                "ID": item.id,
                "Created At": item.created_at,
                "Updated At": item.updated_at,
                "Active": item.is_active,
                "Allowed SPs": list(item.allowed_sps) if item.allowed_sps is not None else None,
                "Max Deviation": item.max_deviation,
                "Signers": [_signer_to_dict(x) for x in item.signers],
            }
            for item in app.sps_change_requests
        ],
        "Client Contract Address": app.client_contract_address,
    }


def application_from_dict(data: Any) -> ApplicationFile:
    try:
        validate(instance=data, schema=APPLICATION_SCHEMA)
    except ValidationError as exc:
        raise MalformedDocument(f"application document is invalid: {exc.message}") from exc

    client = data["Client"]
    datacap = data["Datacap"]
    lifecycle = data["Lifecycle"]
    allocation = tuple(
        AllocationRequest(
            id=str(item["ID"]),
            actor=str(item.get("Actor", "")),
            kind=parse_request_kind(str(item["Request Type"])),
            amount=str(item["Allocation Amount"]),
            is_active=bool(item["Active"]),
            signers=tuple(_signer_from_dict(x) for x in item.get("Signers", [])),
            created_at=str(item.get("Created At", "")),
            updated_at=str(item.get("Updated At", "")),
        )
        for item in data.get("Allocation Requests", [])
    )
    sps_change_requests = tuple(
        SpsChangeRequest(
            id=str(item["ID"]),
            is_active=bool(item["Active"]),
            allowed_sps=tuple(item["Allowed SPs"]) if item.get("Allowed SPs") is not None else None,
            max_deviation=item.get("Max Deviation"),
            signers=tuple(_signer_from_dict(x) for x in item.get("Signers", [])),
            created_at=str(item.get("Created At", "")),
            updated_at=str(item.get("Updated At", "")),
        )
        for item in data.get("Storage Providers Change Requests", [])
    )
    return ApplicationFile(
        version=int(data.get("Version", 1)),
        id=str(data["ID"]),
        issue_number=str(data["Issue Number"]),
        client=Client(
            name=str(client["Name"]),
            region=str(client.get("Region", "")),
            industry=str(client.get("Industry", "")),
            website=str(client.get("Website", "")),
            role=str(client.get("Role", "")),
        ),
        datacap=Datacap(
            type=str(datacap["Type"]),
            total_requested_amount=str(datacap["Total Requested Amount"]),
            data_type=str(datacap.get("Data Type", "")),
            single_size_dataset=str(datacap.get("Single Size Dataset", "")),
            replicas=int(datacap.get("Replicas", 0)),
            weekly_allocation=str(datacap.get("Weekly Allocation", "")),
        ),
        lifecycle=LifeCycle(
            state=AppState(lifecycle["State"]),
            validated_by=str(lifecycle.get("Validated By", "")),
            validated_at=str(lifecycle.get("Validated At", "")),
            active_request=lifecycle.get("Active Request ID"),
            is_active=bool(lifecycle.get("Active", True)),
            client_on_chain_address=str(lifecycle.get("On Chain Address", "")),
            multisig_address=str(lifecycle.get("Multisig Address", "")),
            updated_at=str(lifecycle.get("Updated At", "")),
            edited=bool(lifecycle.get("edited") or False),
        ),
        allocation=allocation,
        sps_change_requests=sps_change_requests,
        client_contract_address=data.get("Client Contract Address"),
    )


def dumps_application(app: ApplicationFile) -> str:
    return json.dumps(application_to_dict(app), indent=2, ensure_ascii=False)


def loads_application(text: str) -> ApplicationFile:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise MalformedDocument(f"application document is not valid JSON: {exc}") from exc
    return application_from_dict(data)
