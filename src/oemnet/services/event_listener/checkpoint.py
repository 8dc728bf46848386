"""Checkpoint management for event listener resumption."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class Checkpoint(BaseModel):
    """Event listener checkpoint state."""

    last_block: int | None = None
    last_tx_id: str = ""
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    channel_name: str = ""
    chaincode_id: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def next_block(self) -> int | None:
        """First block to request on resume, None to start from newest."""
        return None if self.last_block is None else self.last_block + 1


class CheckpointManager:
    """Persists the last processed block to a JSON file.

    Without a path the checkpoint only lives in memory.
    """

    def __init__(self, checkpoint_path: str | Path | None = None):
        """Initialize checkpoint manager.

        Args:
            checkpoint_path: Path for file-based checkpoint storage
        """
        self.checkpoint_path = Path(checkpoint_path) if checkpoint_path else None
        self._checkpoint: Checkpoint | None = None

    async def load(self) -> Checkpoint:
        """Load checkpoint from storage.

        Returns:
            Checkpoint state or default if not found
        """
        if self.checkpoint_path and self.checkpoint_path.exists():
            checkpoint = self._load_from_file()
            if checkpoint:
                self._checkpoint = checkpoint
                return checkpoint

        self._checkpoint = Checkpoint()
        return self._checkpoint

    async def save(self, checkpoint: Checkpoint) -> bool:
        """Save checkpoint to storage.

        Returns:
            True if saved successfully
        """
        checkpoint.last_updated = datetime.now(timezone.utc)
        self._checkpoint = checkpoint

        if self.checkpoint_path:
            return self._save_to_file(checkpoint)
        return False

    async def update_block(self, block_number: int, tx_id: str = "") -> bool:
        """Record a fully processed block.

        Args:
            block_number: Latest processed block
            tx_id: Last transaction of that block

        Returns:
            True if persisted
        """
        if not self._checkpoint:
            await self.load()

        self._checkpoint.last_block = block_number
        self._checkpoint.last_tx_id = tx_id
        return await self.save(self._checkpoint)

    def get_last_block(self) -> int | None:
        """Get last processed block number."""
        return self._checkpoint.last_block if self._checkpoint else None

    def _load_from_file(self) -> Checkpoint | None:
        try:
            with open(self.checkpoint_path, "r") as f:
                return Checkpoint.model_validate(json.load(f))
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Failed to load checkpoint from file: {e}")
            return None

    def _save_to_file(self, checkpoint: Checkpoint) -> bool:
        try:
            self.checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.checkpoint_path, "w") as f:
                json.dump(checkpoint.model_dump(mode="json"), f, indent=2)
            return True
        except OSError as e:
            logger.error(f"Failed to save checkpoint to file: {e}")
            return False

    async def reset(self) -> bool:
        """Reset checkpoint to initial state."""
        self._checkpoint = Checkpoint()
        return await self.save(self._checkpoint)
