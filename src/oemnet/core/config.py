"""Application configuration management using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="oemnet", description="Application name")
    environment: Literal["development", "testing", "staging", "production"] = Field(
        default="development", description="Runtime environment"
    )

    # Network profiles
    connection_profile_path: str = Field(
        default="profiles/aws-dev-connection.yaml",
        description="Connection profile (network topology) path",
    )
    client_profile_paths: dict[str, str] = Field(
        default={
            "requirements.oem.com": "profiles/requirements-client.yaml",
            "designgroup.oem.com": "profiles/designgroup-client.yaml",
            "simulation.com": "profiles/simulation-client.yaml",
        },
        description="Client profile path per organization",
    )
    org_name: str = Field(
        default="requirements.oem.com", description="Organization of the client"
    )

    # Identity
    user_name: str = Field(default="Admin", description="User in the credential store")
    wallet_path: str = Field(default="./user-wallet", description="Gateway wallet path")
    gateway_identity: str = Field(
        default="Admin@requirements.oem.com", description="Wallet identity label"
    )

    # Channel / chaincode
    channel_name: str = Field(default="oem-channel", description="Channel name")
    chaincode_id: str = Field(default="oemcc", description="Chaincode identifier")
    peer_name: str = Field(
        default="peer0.oem.requirements.com", description="Target endorsing peer"
    )
    event_peer_name: str | None = Field(
        default=None, description="Peer used as event source (defaults to peer_name)"
    )

    # Transaction flow
    request_timeout: float = Field(
        default=30.0, description="Timeout for a single peer/orderer request (seconds)"
    )
    commit_timeout: float = Field(
        default=300.0, description="Timeout for a commit event (seconds)"
    )
    min_endorsements: int = Field(
        default=1, ge=1, description="Minimum successful endorsements before ordering"
    )
    require_all_endorsements: bool = Field(
        default=False, description="Refuse ordering if any target peer fails"
    )
    commit_strategy: Literal["none", "any_for_tx", "all_for_tx"] = Field(
        default="any_for_tx", description="Gateway commit wait strategy"
    )

    # Event listener
    listener_checkpoint_path: str = Field(
        default=".oemnet/listener-checkpoint.json",
        description="Checkpoint file for the event listener",
    )
    listener_reconnect_delay: float = Field(
        default=5.0, description="Base reconnect delay for the listener (seconds)"
    )
    listener_max_reconnect_attempts: int = Field(
        default=10, description="Maximum listener reconnect attempts"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="console", description="Log output format"
    )

    @property
    def active_client_profile_path(self) -> str:
        """Get client profile path for the configured organization.

        Raises:
            ValueError: Organization has no client profile
        """
        try:
            return self.client_profile_paths[self.org_name]
        except KeyError:
            raise ValueError(f"Invalid Org: {self.org_name}") from None

    @computed_field
    @property
    def active_event_peer(self) -> str:
        """Get the peer used as event source."""
        return self.event_peer_name or self.peer_name


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
