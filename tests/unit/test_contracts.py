"""Tests for the OEM chaincode bindings."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from oemnet.infrastructure.fabric.contracts import (
    DependentsPayload,
    NewAssetPayload,
    OEMContract,
    OEMEvent,
    OEMFunction,
    Owner,
    ReadAssetPayload,
    Requirement,
    ShareAssetPayload,
    parse_event_payload,
)
from oemnet.infrastructure.fabric.events import ChaincodeEvent

OWNER = Owner(firstname="Sam", lastname="Designer")

REQUIREMENT = {
    "id": "REQ-10",
    "owner": {"firstname": "Sam", "lastname": "Designer"},
    "contentid": "200",
    "status": "shared",
    "CreateTime": "2021-03-01T10:00:00Z",
    "sharetime": "2021-03-01T10:05:00Z",
    "accesstime": "",
    "depid": "",
    "isaccessed": False,
}


def event(name: str, payload: dict) -> ChaincodeEvent:
    return ChaincodeEvent(
        chaincode_id="oemcc",
        event_name=name,
        payload=json.dumps(payload).encode(),
        tx_id="tx1",
        block_number=1,
    )


class TestModels:
    """Tests for chaincode payload models."""

    def test_requirement_aliases(self):
        requirement = Requirement.model_validate(REQUIREMENT)

        assert requirement.content_id == "200"
        assert requirement.owner == OWNER
        assert requirement.is_accessed is False
        assert requirement.model_dump(by_alias=True)["contentid"] == "200"

    def test_owner_json(self):
        assert json.loads(OWNER.model_dump_json()) == {"firstname": "Sam", "lastname": "Designer"}


class TestParseEventPayload:
    """Tests for decoding event payloads."""

    def test_new_asset(self):
        payload = parse_event_payload(
            event("newAsset", {"assetid": "130", "createime": "2021-03-01T10:00:00Z"})
        )

        assert isinstance(payload, NewAssetPayload)
        assert payload.asset_id == "130"
        assert payload.create_time == "2021-03-01T10:00:00Z"

    def test_asset_shared(self):
        payload = parse_event_payload(
            event("assetShared", {"assetid": "Req-14504", "sharetime": "t", "dependents": ["a"]})
        )

        assert isinstance(payload, ShareAssetPayload)
        assert payload.dependents == ["a"]

    def test_asset_accessed(self):
        payload = parse_event_payload(
            event("assetAccessed", {"assetid": "Req-14504", "sharetime": "t1", "readtime": "t2"})
        )

        assert isinstance(payload, ReadAssetPayload)
        assert payload.read_time == "t2"

    def test_asset_modified(self):
        payload = parse_event_payload(
            event("assetModified", {"source": "REQ-10", "dependents": ["REQ-11", "REQ-12"]})
        )

        assert isinstance(payload, DependentsPayload)
        assert payload.dependents == ["REQ-11", "REQ-12"]

    def test_unknown_event(self):
        assert parse_event_payload(event("somethingElse", {})) is None

    def test_event_names(self):
        assert {e.value for e in OEMEvent} == {
            "newAsset",
            "assetShared",
            "assetModified",
            "assetAccessed",
        }


class TestOEMContract:
    """Tests for typed chaincode calls."""

    def setup_method(self):
        """Set up test fixtures."""
        self.contract = MagicMock()
        self.contract.submit_transaction = AsyncMock(return_value=b"")
        self.contract.evaluate_transaction = AsyncMock(
            return_value=json.dumps(REQUIREMENT).encode()
        )
        self.oem = OEMContract(self.contract)

    @pytest.mark.asyncio
    async def test_new_asset(self):
        await self.oem.new_asset("130", OWNER, "200")

        self.contract.submit_transaction.assert_awaited_once_with(
            "NewAsset", "130", OWNER.model_dump_json(), "200"
        )

    @pytest.mark.asyncio
    async def test_share_assets_bulk_single_argument(self):
        asset_ids = [f"Req-1{i}" for i in range(4504, 9504)]

        await self.oem.share_assets_bulk(asset_ids, OWNER)

        self.contract.submit_transaction.assert_awaited_once()
        name, ids_arg, owner_arg = self.contract.submit_transaction.await_args.args
        assert name == OEMFunction.SHARE_ASSETS_BULK.value
        assert json.loads(ids_arg) == asset_ids
        assert json.loads(owner_arg) == {"firstname": "Sam", "lastname": "Designer"}

    @pytest.mark.asyncio
    async def test_share_asset_returns_dependents(self):
        self.contract.submit_transaction.return_value = b'["REQ-11"]'

        assert await self.oem.share_asset("REQ-10", OWNER) == ["REQ-11"]

    @pytest.mark.asyncio
    async def test_share_asset_empty_response(self):
        assert await self.oem.share_asset("REQ-10", OWNER) == []

    @pytest.mark.asyncio
    async def test_create_dependent(self):
        self.contract.submit_transaction.return_value = json.dumps(
            {**REQUIREMENT, "depid": "REQ-11"}
        ).encode()

        requirement = await self.oem.create_dependent("REQ-10", ["REQ-11"])

        assert requirement.dep_id == "REQ-11"
        self.contract.submit_transaction.assert_awaited_once_with(
            "CreateDependent", "REQ-10", '["REQ-11"]'
        )

    @pytest.mark.asyncio
    async def test_update_value(self):
        await self.oem.update_value("REQ-10", "300")

        self.contract.submit_transaction.assert_awaited_once_with("UpdateValue", "REQ-10", "300")

    @pytest.mark.asyncio
    async def test_read_asset_is_submitted(self):
        self.contract.submit_transaction.return_value = json.dumps(
            {**REQUIREMENT, "isaccessed": True}
        ).encode()

        requirement = await self.oem.read_asset("REQ-10")

        assert requirement.is_accessed is True
        self.contract.evaluate_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_asset_is_evaluated(self):
        requirement = await self.oem.get_asset("REQ-10")

        assert requirement.id == "REQ-10"
        self.contract.evaluate_transaction.assert_awaited_once_with("GetAsset", "REQ-10")
        self.contract.submit_transaction.assert_not_awaited()
