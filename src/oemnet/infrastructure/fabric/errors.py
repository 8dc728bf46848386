"""Exceptions raised by the fabric client layer."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from oemnet.infrastructure.fabric.transaction import TransactionResult


class FabricClientError(Exception):
    """Base class for client errors."""


# Setup


class ProfileError(FabricClientError):
    """Connection or client profile is missing or malformed."""


class IdentityNotFoundError(FabricClientError):
    """User identity is absent from the credential store or wallet."""

    def __init__(self, name: str, store: str):
        super().__init__(f"User NOT found in credential store {store}: {name}")
        self.name = name
        self.store = store


class ChannelNotFoundError(FabricClientError):
    """Channel is not defined in the loaded profile."""

    def __init__(self, name: str):
        super().__init__(f"Could NOT create channel: {name}")
        self.name = name


# Transport


class TransportError(FabricClientError):
    """A request to a peer or orderer failed at the transport level."""


class ProposalTransportError(TransportError):
    """The proposal could not be sent to any target peer."""


class BroadcastError(TransportError):
    """The ordering service rejected or failed to acknowledge an envelope."""


# Protocol


class EndorsementPolicyError(FabricClientError):
    """Proposal responses do not satisfy the endorsement policy."""


class EndorsementMismatchError(EndorsementPolicyError):
    """Endorsing peers returned different read/write sets."""


# Gateway


class TransactionError(FabricClientError):
    """A gateway transaction did not complete successfully."""

    def __init__(self, message: str, result: "TransactionResult | None" = None):
        super().__init__(message)
        self.result = result

    @property
    def transaction_id(self) -> str | None:
        return self.result.tx_id if self.result else None


class CommitTimeoutError(TransactionError):
    """No commit event was received within the configured timeout."""


# Events


class EventHubError(FabricClientError):
    """Event delivery failed."""


class EventHubDisconnectedError(EventHubError):
    """Event hub was shut down while registrations were active."""
