from __future__ import annotations

import json

import pytest

from grantflow.codec import (
    MalformedDocument,
    application_to_dict,
    dumps_application,
    format_request_kind,
    loads_application,
    parse_request_kind,
)
from grantflow.models import AllocationRequest, AppState, First, Refill, Removal, Signer

SAMPLE = {
    "Version": 1,
    "ID": "rec-42",
    "Issue Number": "42",
    "Client": {"Name": "Acme Data", "Region": "Europe", "Industry": "Research", "Website": "", "Role": ""},
    "Datacap": {
        "Type": "ldn-v3",
        "Data Type": "Slingshot",
        "Total Requested Amount": "5PiB",
        "Single Size Dataset": "1PiB",
        "Replicas": 5,
        "Weekly Allocation": "100TiB",
    },
    "Lifecycle": {
        "State": "StartSignDatacap",
        "Validated At": "2024-05-01T09:00:00+00:00",
        "Validated By": "alice",
        "Active Request ID": "req-2",
        "Updated At": "2024-05-01T10:00:00+00:00",
        "Active": True,
        "On Chain Address": "f1client",
        "Multisig Address": "f2multisig",
        "edited": None,
    },
    "Allocation Requests": [
        {
            "ID": "req-1",
            "Request Type": "First",
            "Actor": "alice",
            "Created At": "2024-04-01T00:00:00+00:00",
            "Updated At": "2024-04-02T00:00:00+00:00",
            "Active": False,
            "Allocation Amount": "50TiB",
            "Signers": [
                {
                    "Github Username": "alice",
                    "Signing Address": "f1alice",
                    "Created At": "2024-04-01T00:00:00+00:00",
                    "Message CID": "bafy-1",
                    "Increase allowance CID": None,
                }
            ],
        },
        {
            "ID": "req-2",
            "Request Type": "Refill(1)",
            "Actor": "alice",
            "Active": True,
            "Allocation Amount": "100TiB",
            "Signers": [],
        },
    ],
    "Storage Providers Change Requests": [],
    "Client Contract Address": None,
}


def test_loads_document_with_history():
    app = loads_application(json.dumps(SAMPLE))

    assert app.id == "rec-42"
    assert app.state == AppState.START_SIGN_DATACAP
    assert app.edited is False
    assert app.datacap.replicas == 5
    assert [item.kind for item in app.allocation] == [First(), Refill(1)]
    assert app.allocation[0].signers[0] == Signer(
        github_username="alice",
        signing_address="f1alice",
        created_at="2024-04-01T00:00:00+00:00",
        message_cid="bafy-1",
    )
    assert app.allocation[1].created_at == ""


def test_dump_keeps_wire_field_names():
    app = loads_application(json.dumps(SAMPLE))

    data = json.loads(dumps_application(app))

    assert data["Lifecycle"]["Active Request ID"] == "req-2"
    assert data["Lifecycle"]["edited"] is False
    assert data["Allocation Requests"][1]["Request Type"] == "Refill(1)"
    assert loads_application(dumps_application(app)) == app


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.pop("Lifecycle"),
        lambda d: d["Lifecycle"].update({"State": "Approved"}),
        lambda d: d["Allocation Requests"][0].update({"Request Type": "Refill(x)"}),
        lambda d: d["Datacap"].update({"Replicas": -1}),
        lambda d: d["Allocation Requests"][0]["Signers"][0].pop("Signing Address"),
    ],
)
def test_malformed_documents_are_rejected(mutate):
    data = json.loads(json.dumps(SAMPLE))
    mutate(data)

    with pytest.raises(MalformedDocument):
        loads_application(json.dumps(data))


def test_not_json_is_rejected():
    with pytest.raises(MalformedDocument):
        loads_application("{")


def test_request_kind_text_form():
    assert parse_request_kind("Refill(12)") == Refill(12)
    assert parse_request_kind("Removal") == Removal()
    assert format_request_kind(Refill(3)) == "Refill(3)"
    with pytest.raises(MalformedDocument):
        parse_request_kind("Topup")


def test_application_to_dict_lists_requests_in_order():
    app = loads_application(json.dumps(SAMPLE))
    extra = AllocationRequest(id="req-3", actor="bob", kind=Removal(), amount="1TiB", is_active=False)
    data = application_to_dict(app.with_allocation((*app.allocation, extra), app.lifecycle))

    assert [x["ID"] for x in data["Allocation Requests"]] == ["req-1", "req-2", "req-3"]
    assert data["Allocation Requests"][2]["Request Type"] == "Removal"
