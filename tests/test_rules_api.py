"""HTTP tests for the rules router."""

import pytest

RULE_PAYLOAD = {
    "name": "Bank to ERP exact",
    "description": "Same amount on both sides",
    "conditions": [{"field": "amount", "field_type": "amount", "comparator": "greater_than", "value": "0"}],
    "match_configuration": {"strategy": "exact", "key_fields": ["amount"]},
    "priority": 3,
    "tags": ["bank"],
    "created_by": "analyst",
}


async def _create(client, **overrides) -> dict:
    response = await client.post("/rules", json={**RULE_PAYLOAD, **overrides})
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_create_and_get_rule(client) -> None:
    rule = await _create(client)

    assert rule["rule_number"] == "RUL-00001"
    assert rule["status"] == "draft"
    assert rule["match_configuration"]["strategy"] == "exact"

    fetched = await client.get(f"/rules/{rule['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Bank to ERP exact"


@pytest.mark.asyncio
async def test_create_rule_validation_error(client) -> None:
    response = await client.post("/rules", json={**RULE_PAYLOAD, "priority": 42})
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["kind"] == "validation"
    assert detail["message"] == "Priority must be between 1 and 10"
    assert detail["details"] == {"priority": 42}


@pytest.mark.asyncio
async def test_unknown_rule_is_404(client) -> None:
    assert (await client.get("/rules/missing")).status_code == 404
    assert (await client.delete("/rules/missing")).status_code == 404


@pytest.mark.asyncio
async def test_update_and_versions(client) -> None:
    rule = await _create(client)

    updated = await client.put(f"/rules/{rule['id']}", json={"priority": 1, "updated_by": "analyst"})
    assert updated.status_code == 200
    assert updated.json()["version"] == 2

    versions = (await client.get(f"/rules/{rule['id']}/versions")).json()
    assert [version["version"] for version in versions] == [2, 1]
    assert versions[1]["change_type"] == "created"


@pytest.mark.asyncio
async def test_approval_flow_and_toggle(client) -> None:
    rule = await _create(client)
    rule_id = rule["id"]

    submitted = await client.post(f"/rules/{rule_id}/submit", json={"requested_by": "analyst"})
    assert submitted.status_code == 200
    assert submitted.json()["status"] == "pending"

    approvals = (await client.get("/rules/approvals")).json()
    assert [request["rule_id"] for request in approvals] == [rule_id]

    approved = await client.post(f"/rules/{rule_id}/approve", json={"actor": "lead"})
    assert approved.json()["status"] == "approved"

    toggled = await client.post(f"/rules/{rule_id}/toggle", json={"actor": "lead"})
    assert toggled.json()["status"] == "active"
    assert toggled.json()["is_enabled"] is True

    active = (await client.get("/rules", params={"status": "active"})).json()
    assert [item["id"] for item in active["items"]] == [rule_id]


@pytest.mark.asyncio
async def test_toggle_draft_rule_conflicts(client) -> None:
    rule = await _create(client)
    response = await client.post(f"/rules/{rule['id']}/toggle", json={"actor": "lead"})
    assert response.status_code == 409
    assert response.json()["detail"]["kind"] == "precondition"


@pytest.mark.asyncio
async def test_reject_rule(client) -> None:
    rule = await _create(client)
    await client.post(f"/rules/{rule['id']}/submit", json={"requested_by": "analyst"})

    response = await client.post(f"/rules/{rule['id']}/reject", json={"actor": "lead", "reason": "too broad"})

    assert response.status_code == 200
    assert response.json()["status"] == "rejected"
    assert response.json()["rejection_reason"] == "too broad"


@pytest.mark.asyncio
async def test_list_rules_and_tags(client) -> None:
    await _create(client, name="Card settlements", tags=["card"])
    await _create(client, name="Wire transfers", tags=["wire"])

    listing = (await client.get("/rules", params={"tags": "wire"})).json()
    assert listing["total"] == 1
    assert listing["items"][0]["name"] == "Wire transfers"

    assert (await client.get("/rules/tags")).json() == ["card", "wire"]
    assert (await client.get("/rules", params={"sort_by": "conditions"})).status_code == 400


@pytest.mark.asyncio
async def test_validate_endpoint(client) -> None:
    response = await client.post("/rules/validate", json={"name": "r", "conditions": [], "priority": 3})
    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is False
    assert data["errors"] == ["At least one condition is required", "Match strategy is required"]


@pytest.mark.asyncio
async def test_rule_test_endpoint(client) -> None:
    rule = await _create(client)

    response = await client.post(f"/rules/{rule['id']}/test", json={"sample": {"amount": "-5"}})

    assert response.status_code == 200
    data = response.json()
    assert data["matched"] is False
    assert data["trace"] == [
        {"index": 0, "field": "amount", "comparator": "greater_than", "passed": False, "running_result": False}
    ]


@pytest.mark.asyncio
async def test_delete_rule(client) -> None:
    rule = await _create(client)
    assert (await client.delete(f"/rules/{rule['id']}")).status_code == 204
    assert (await client.get(f"/rules/{rule['id']}")).status_code == 404
