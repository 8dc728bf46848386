"""Client context: profile, signing identity, transport and channels."""

import logging
from pathlib import Path

from oemnet.core.config import Settings, get_settings
from oemnet.infrastructure.fabric.channel import Channel
from oemnet.infrastructure.fabric.errors import (
    ChannelNotFoundError,
    FabricClientError,
    IdentityNotFoundError,
    ProfileError,
)
from oemnet.infrastructure.fabric.profile import (
    ConnectionProfile,
    merge_profiles,
    parse_profile,
    read_profile,
)
from oemnet.infrastructure.fabric.transaction import TransactionID
from oemnet.infrastructure.fabric.transport import HttpPeerTransport, PeerTransport
from oemnet.infrastructure.fabric.wallet import CredentialStore, Identity

logger = logging.getLogger(__name__)

# Regenerating on collision is practically never needed with 24-byte nonces
MAX_TX_ID_ATTEMPTS = 5


class FabricClient:
    """Explicit client context passed to every operation.

    Created once at startup; the profile, identity and transport are
    read-only afterwards.
    """

    def __init__(
        self,
        profile: ConnectionProfile | None = None,
        transport: PeerTransport | None = None,
        request_timeout: float = 30.0,
    ):
        """Initialize client.

        Args:
            profile: Validated connection profile
            transport: Peer/orderer transport (HTTP transport if not given)
            request_timeout: Timeout for the default transport
        """
        self._raw_profile: dict = profile.model_dump(by_alias=True) if profile else {}
        self.profile = profile or ConnectionProfile()
        self.request_timeout = request_timeout
        self._transport = transport
        self._user: Identity | None = None
        self._channels: dict[str, Channel] = {}
        self._issued_tx_ids: set[str] = set()

    @classmethod
    def from_profiles(
        cls,
        *paths: str | Path,
        transport: PeerTransport | None = None,
        request_timeout: float = 30.0,
    ) -> "FabricClient":
        """Create a client from one or more profile files, later files winning."""
        client = cls(transport=transport, request_timeout=request_timeout)
        for path in paths:
            client.load_from_config(path)
        return client

    def load_from_config(self, path: str | Path) -> None:
        """Merge another profile (e.g. the client section) into this client."""
        self._raw_profile = merge_profiles(self._raw_profile, read_profile(path))
        self.profile = parse_profile(self._raw_profile)
        self._channels.clear()
        logger.debug(f"Loaded profile {path}")

    @property
    def transport(self) -> PeerTransport:
        if self._transport is None:
            self._transport = HttpPeerTransport(timeout=self.request_timeout)
        return self._transport

    # -- identity -------------------------------------------------------------

    def init_credential_stores(self) -> CredentialStore:
        """Build the credential store named in the client section.

        Raises:
            ProfileError: Client section has no credential store
        """
        store_config = self.profile.client.credential_store
        if store_config is None:
            raise ProfileError("Client profile does not define a credentialStore")
        crypto_path = store_config.crypto_store.path if store_config.crypto_store else None
        return CredentialStore(store_config.path, crypto_path)

    def set_user_context(self, identity: Identity) -> None:
        self._user = identity
        logger.info(f"User context set to {identity.name} ({identity.mspid})")

    @property
    def user_context(self) -> Identity:
        """Current signing identity.

        Raises:
            FabricClientError: No user context has been set
        """
        if self._user is None:
            raise FabricClientError("No user context set on client")
        return self._user

    def new_transaction_id(self) -> TransactionID:
        """Generate a transaction id never issued before by this client."""
        for _ in range(MAX_TX_ID_ATTEMPTS):
            tx_id = TransactionID.generate(self.user_context)
            if tx_id.value not in self._issued_tx_ids:
                self._issued_tx_ids.add(tx_id.value)
                return tx_id
            logger.warning(f"Transaction ID collision on {tx_id.value}, regenerating")
        raise FabricClientError("Unable to generate a unique transaction ID")

    # -- channels -------------------------------------------------------------

    def get_channel(self, name: str) -> Channel:
        """Get the channel handle for a channel defined in the profile.

        Raises:
            ChannelNotFoundError: Channel is not in the profile
        """
        if name not in self.profile.channels:
            raise ChannelNotFoundError(name)
        if name not in self._channels:
            self._channels[name] = Channel(name, self)
        return self._channels[name]

    async def close(self) -> None:
        for channel in self._channels.values():
            await channel.close()
        if self._transport is not None:
            await self._transport.close()

    async def __aenter__(self) -> "FabricClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


def setup_client(
    settings: Settings | None = None,
    transport: PeerTransport | None = None,
) -> FabricClient:
    """Create a client ready to sign as the configured user.

    1. Loads the connection profile and the organization's client profile
    2. Opens the credential store from the client section
    3. Loads the user and sets it as user context

    Raises:
        ProfileError: Unknown organization or unreadable profile
        IdentityNotFoundError: User is absent from the credential store
    """
    settings = settings or get_settings()
    try:
        client_profile = settings.active_client_profile_path
    except ValueError as e:
        raise ProfileError(str(e)) from e

    client = FabricClient.from_profiles(
        settings.connection_profile_path,
        client_profile,
        transport=transport,
        request_timeout=settings.request_timeout,
    )

    store = client.init_credential_stores()
    identity = store.get(settings.user_name)
    if identity is None:
        raise IdentityNotFoundError(settings.user_name, str(store.state_store_path))

    client.set_user_context(identity)
    return client
