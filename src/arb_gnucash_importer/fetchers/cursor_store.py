"""Persistent per-address fetch positions for incremental exports."""

from pathlib import Path
from typing import Any, Optional
import json
import logging
import os
import tempfile

from ..models.transaction import AddressHistory
from ..utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class CursorStore:
    """
    Highest block already exported, per address.

    The store is a small JSON document. ``start_block_for`` returns the
    block after the stored one so an incremental run never re-exports a
    block that was already fully fetched.
    """

    def __init__(self, path: Path, blocks: Optional[dict[str, int]] = None) -> None:
        self.path = path
        self.blocks: dict[str, int] = dict(blocks or {})

    @classmethod
    def load(cls, path: Path) -> "CursorStore":
        """Load a store; a missing file yields an empty store."""
        if not path.exists():
            logger.info(f"No cursor state at {path}, starting from configured blocks")
            return cls(path)

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to read cursor state {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Cursor state {path} must contain a mapping")

        try:
            blocks = {str(k).lower(): int(v) for k, v in data.items()}
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid block number in {path}: {e}") from e
        return cls(path, blocks)

    def start_block_for(self, address: str, default: int = 0) -> int:
        stored = self.blocks.get(address)
        if stored is None:
            return default
        return max(default, stored + 1)

    def start_blocks(self, addresses: list[str], default: int = 0) -> dict[str, int]:
        return {address: self.start_block_for(address, default) for address in addresses}

    def advanced(
        self,
        histories: list[AddressHistory],
        end_block: Optional[int] = None,
    ) -> "CursorStore":
        """
        Return a new store moved past the fetched histories.

        ``end_block`` is the chain head the run was pinned to: every block up
        to it has been read, even when the address had no records there. Pass
        None when the head is unknown so only fetched blocks count; a
        requested end block past the head must never be stored.
        """
        blocks = dict(self.blocks)
        for history in histories:
            candidates = [
                b
                for b in (history.last_block, end_block, blocks.get(history.address))
                if b is not None
            ]
            if candidates:
                blocks[history.address] = max(candidates)
        return CursorStore(self.path, blocks)

    def save(self) -> None:
        write_json_atomic(self.path, dict(sorted(self.blocks.items())))
        logger.info(f"Saved cursor state for {len(self.blocks)} addresses to {self.path}")


def write_json_atomic(path: Path, data: Any) -> None:
    """Write a JSON document through a temporary file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
