"""Permissioned-ledger (Fabric) client infrastructure module."""

from oemnet.infrastructure.fabric.channel import Channel
from oemnet.infrastructure.fabric.client import FabricClient, setup_client
from oemnet.infrastructure.fabric.contracts import OEMContract, OEMEvent, Owner, Requirement
from oemnet.infrastructure.fabric.errors import (
    ChannelNotFoundError,
    CommitTimeoutError,
    EndorsementPolicyError,
    EventHubError,
    FabricClientError,
    IdentityNotFoundError,
    ProfileError,
    TransactionError,
    TransportError,
)
from oemnet.infrastructure.fabric.events import (
    BlockEvent,
    ChaincodeEvent,
    EventHub,
    EventSubscription,
    TxEvent,
)
from oemnet.infrastructure.fabric.gateway import (
    CommitStrategy,
    Contract,
    Gateway,
    GatewayOptions,
    Network,
)
from oemnet.infrastructure.fabric.profile import ConnectionProfile, load_profile
from oemnet.infrastructure.fabric.transaction import (
    EndorsementPolicy,
    TransactionID,
    TransactionProposalRequest,
    TransactionResult,
    TransactionService,
    TransactionStatus,
)
from oemnet.infrastructure.fabric.transport import HttpPeerTransport, PeerTransport
from oemnet.infrastructure.fabric.wallet import CredentialStore, FileSystemWallet, Identity

__all__ = [
    # Client
    "FabricClient",
    "setup_client",
    "Channel",
    # Profile / identity
    "ConnectionProfile",
    "load_profile",
    "CredentialStore",
    "FileSystemWallet",
    "Identity",
    # Transport
    "PeerTransport",
    "HttpPeerTransport",
    # Transactions
    "EndorsementPolicy",
    "TransactionID",
    "TransactionProposalRequest",
    "TransactionResult",
    "TransactionService",
    "TransactionStatus",
    # Events
    "BlockEvent",
    "ChaincodeEvent",
    "EventHub",
    "EventSubscription",
    "TxEvent",
    # Gateway
    "CommitStrategy",
    "Contract",
    "Gateway",
    "GatewayOptions",
    "Network",
    # OEM chaincode
    "OEMContract",
    "OEMEvent",
    "Owner",
    "Requirement",
    # Errors
    "FabricClientError",
    "ProfileError",
    "IdentityNotFoundError",
    "ChannelNotFoundError",
    "TransportError",
    "EndorsementPolicyError",
    "TransactionError",
    "CommitTimeoutError",
    "EventHubError",
]
