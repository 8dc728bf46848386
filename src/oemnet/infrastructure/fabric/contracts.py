"""Bindings for the OEM requirements chaincode (``oemcc``).

Argument and payload schemas are owned by the chaincode; the models here
mirror its JSON encoding.
"""

import json
import logging
from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field

from oemnet.infrastructure.fabric.events import ChaincodeEvent
from oemnet.infrastructure.fabric.gateway import Contract

logger = logging.getLogger(__name__)

CHAINCODE_ID = "oemcc"


class OEMFunction(str, Enum):
    """Chaincode functions."""

    NEW_ASSET = "NewAsset"
    SHARE_ASSETS_BULK = "ShareAssetsBulk"
    SHARE_ASSET = "ShareAsset"
    CREATE_DEPENDENT = "CreateDependent"
    UPDATE_VALUE = "UpdateValue"
    READ_ASSET = "ReadAsset"
    GET_ASSET = "GetAsset"


class OEMEvent(str, Enum):
    """Chaincode event names."""

    NEW_ASSET = "newAsset"
    ASSET_SHARED = "assetShared"
    ASSET_MODIFIED = "assetModified"
    ASSET_ACCESSED = "assetAccessed"


class _ChaincodeModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Owner(_ChaincodeModel):
    firstname: str
    lastname: str


class Requirement(_ChaincodeModel):
    """A requirement asset as stored in world state."""

    id: str
    owner: Owner
    content_id: str = Field(default="", alias="contentid")
    status: str = ""
    create_time: str = Field(default="", alias="CreateTime")
    share_time: str = Field(default="", alias="sharetime")
    access_time: str = Field(default="", alias="accesstime")
    dep_id: str = Field(default="", alias="depid")
    is_accessed: bool = Field(default=False, alias="isaccessed")


# =============================================================================
# Event payloads
# =============================================================================


class NewAssetPayload(_ChaincodeModel):
    asset_id: str = Field(alias="assetid")
    # Field name as emitted by the chaincode
    create_time: str = Field(default="", alias="createime")


class ShareAssetPayload(_ChaincodeModel):
    asset_id: str = Field(alias="assetid")
    share_time: str = Field(default="", alias="sharetime")
    dependents: list[str] = Field(default_factory=list)


class ReadAssetPayload(_ChaincodeModel):
    asset_id: str = Field(alias="assetid")
    share_time: str = Field(default="", alias="sharetime")
    read_time: str = Field(default="", alias="readtime")


class DependentsPayload(_ChaincodeModel):
    source: str
    dependents: list[str] = Field(default_factory=list)


EVENT_PAYLOADS: dict[OEMEvent, type[_ChaincodeModel]] = {
    OEMEvent.NEW_ASSET: NewAssetPayload,
    OEMEvent.ASSET_SHARED: ShareAssetPayload,
    OEMEvent.ASSET_MODIFIED: DependentsPayload,
    OEMEvent.ASSET_ACCESSED: ReadAssetPayload,
}


def parse_event_payload(event: ChaincodeEvent) -> _ChaincodeModel | None:
    """Decode a chaincode event payload into its model.

    Returns:
        Payload model, or None for events this binding does not know
    """
    try:
        event_type = OEMEvent(event.event_name)
    except ValueError:
        logger.debug(f"Unknown OEM event: {event.event_name}")
        return None
    return EVENT_PAYLOADS[event_type].model_validate_json(event.payload)


# =============================================================================
# Contract binding
# =============================================================================


class OEMContract:
    """Typed calls against the OEM chaincode through a gateway contract."""

    def __init__(self, contract: Contract):
        self.contract = contract

    async def new_asset(self, asset_id: str, owner: Owner, text: str) -> None:
        await self.contract.submit_transaction(
            OEMFunction.NEW_ASSET.value, asset_id, owner.model_dump_json(), text
        )

    async def share_assets_bulk(self, asset_ids: Sequence[str], owner: Owner) -> None:
        """Share many assets in one transaction."""
        await self.contract.submit_transaction(
            OEMFunction.SHARE_ASSETS_BULK.value,
            json.dumps(list(asset_ids)),
            owner.model_dump_json(),
        )

    async def share_asset(self, asset_id: str, owner: Owner) -> list[str]:
        """Share one asset; returns its dependent ids."""
        payload = await self.contract.submit_transaction(
            OEMFunction.SHARE_ASSET.value, asset_id, owner.model_dump_json()
        )
        return _decode(payload) or []

    async def create_dependent(self, from_id: str, to_ids: Sequence[str]) -> Requirement:
        payload = await self.contract.submit_transaction(
            OEMFunction.CREATE_DEPENDENT.value, from_id, json.dumps(list(to_ids))
        )
        return Requirement.model_validate_json(payload)

    async def update_value(self, asset_id: str, new_text: str) -> None:
        await self.contract.submit_transaction(
            OEMFunction.UPDATE_VALUE.value, asset_id, new_text
        )

    async def read_asset(self, asset_id: str) -> Requirement:
        """Read an asset as a transaction.

        The first read after sharing marks the asset accessed and emits
        ``assetAccessed``, so it has to be ordered.
        """
        payload = await self.contract.submit_transaction(
            OEMFunction.READ_ASSET.value, asset_id
        )
        return Requirement.model_validate_json(payload)

    async def get_asset(self, asset_id: str) -> Requirement:
        payload = await self.contract.evaluate_transaction(
            OEMFunction.GET_ASSET.value, asset_id
        )
        return Requirement.model_validate_json(payload)


def _decode(payload: bytes) -> Any:
    return json.loads(payload) if payload else None
