"""Connection and client profile loading.

Profiles follow the common connection-profile layout used by ledger SDKs:
a network topology (channels, organizations, peers, orderers) and an
optional ``client`` section with the credential store location. Several
profiles can be merged, e.g. the shared network profile plus a
per-organization client profile.
"""

import copy
import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from oemnet.infrastructure.fabric.errors import ProfileError

logger = logging.getLogger(__name__)


class _ProfileModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TLSCACerts(_ProfileModel):
    """TLS CA certificate given inline or as a file path."""

    pem: str | None = None
    path: str | None = None

    def load(self) -> str | None:
        """Return the PEM text, reading it from disk when given as a path."""
        if self.pem:
            return self.pem
        if self.path:
            try:
                return Path(self.path).read_text()
            except OSError as e:
                raise ProfileError(f"Unable to read TLS CA cert {self.path}: {e}") from e
        return None


class NodeConfig(_ProfileModel):
    """A peer or orderer endpoint."""

    url: str
    event_url: str | None = Field(default=None, alias="eventUrl")
    grpc_options: dict[str, Any] = Field(default_factory=dict, alias="grpcOptions")
    tls_ca_certs: TLSCACerts | None = Field(default=None, alias="tlsCACerts")


class ChannelPeerOptions(_ProfileModel):
    """Roles a peer plays on a channel."""

    endorsing_peer: bool = Field(default=True, alias="endorsingPeer")
    chaincode_query: bool = Field(default=True, alias="chaincodeQuery")
    ledger_query: bool = Field(default=True, alias="ledgerQuery")
    event_source: bool = Field(default=True, alias="eventSource")


class ChannelConfig(_ProfileModel):
    orderers: list[str] = Field(default_factory=list)
    peers: dict[str, ChannelPeerOptions] = Field(default_factory=dict)

    @field_validator("peers", mode="before")
    @classmethod
    def _peers_from_list(cls, value: Any) -> Any:
        # A bare list of names means every role is enabled
        if isinstance(value, list):
            return {name: {} for name in value}
        return value if value is not None else {}


class OrganizationConfig(_ProfileModel):
    mspid: str
    peers: list[str] = Field(default_factory=list)
    certificate_authorities: list[str] = Field(
        default_factory=list, alias="certificateAuthorities"
    )


class CryptoStoreConfig(_ProfileModel):
    path: str


class CredentialStoreConfig(_ProfileModel):
    path: str
    crypto_store: CryptoStoreConfig | None = Field(default=None, alias="cryptoStore")


class ClientConfig(_ProfileModel):
    """The ``client`` section of a profile."""

    organization: str | None = None
    credential_store: CredentialStoreConfig | None = Field(
        default=None, alias="credentialStore"
    )
    connection: dict[str, Any] = Field(default_factory=dict)


class ConnectionProfile(_ProfileModel):
    """Validated network topology."""

    name: str = "network"
    version: str = "1.0"
    client: ClientConfig = Field(default_factory=ClientConfig)
    channels: dict[str, ChannelConfig] = Field(default_factory=dict)
    organizations: dict[str, OrganizationConfig] = Field(default_factory=dict)
    orderers: dict[str, NodeConfig] = Field(default_factory=dict)
    peers: dict[str, NodeConfig] = Field(default_factory=dict)

    @field_validator("version", mode="before")
    @classmethod
    def _version_to_str(cls, value: Any) -> Any:
        return str(value) if value is not None else "1.0"

    @field_validator(
        "client", "channels", "organizations", "orderers", "peers", mode="before"
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return value if value is not None else {}

    def get_peer(self, name: str) -> NodeConfig:
        """Get peer definition by name.

        Raises:
            ProfileError: Peer is not defined
        """
        if name not in self.peers:
            raise ProfileError(f"Peer not defined in profile: {name}")
        return self.peers[name]

    def get_orderer(self, name: str) -> NodeConfig:
        """Get orderer definition by name.

        Raises:
            ProfileError: Orderer is not defined
        """
        if name not in self.orderers:
            raise ProfileError(f"Orderer not defined in profile: {name}")
        return self.orderers[name]

    def organization_for_peer(self, peer_name: str) -> OrganizationConfig | None:
        for org in self.organizations.values():
            if peer_name in org.peers:
                return org
        return None


def read_profile(path: str | Path) -> dict[str, Any]:
    """Read a YAML or JSON profile file into a dict.

    The format is chosen by file suffix; anything that is not ``.json`` is
    parsed as YAML (a superset of JSON).

    Raises:
        ProfileError: File is missing or not parseable
    """
    profile_path = Path(path)
    try:
        text = profile_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ProfileError(f"Unable to read profile {profile_path}: {e}") from e

    try:
        if profile_path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ProfileError(f"Unable to parse profile {profile_path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ProfileError(f"Profile {profile_path} must contain a mapping")

    logger.debug(f"Read profile {profile_path} ({len(data)} sections)")
    return data


def merge_profiles(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overlay`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_profiles(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def parse_profile(data: dict[str, Any]) -> ConnectionProfile:
    """Validate raw profile data.

    Raises:
        ProfileError: Data does not match the profile schema
    """
    try:
        return ConnectionProfile.model_validate(data)
    except ValidationError as e:
        raise ProfileError(f"Invalid connection profile: {e}") from e


def load_profile(*paths: str | Path) -> ConnectionProfile:
    """Load and merge one or more profile files, later files winning."""
    data: dict[str, Any] = {}
    for path in paths:
        data = merge_profiles(data, read_profile(path))
    return parse_profile(data)
