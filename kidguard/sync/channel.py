"""Publication of rule snapshots into the shared directory.

The enforcement point runs with fewer privileges than the daemon and only
ever reads the one well-known snapshot file. Publishing replaces that file
atomically; on any failure the previous snapshot stays authoritative.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from kidguard.models import CompiledRule
from kidguard.sync.snapshot import (
    DEFAULT_SNAPSHOT_NAME,
    RuleSnapshot,
    atomic_write_text,
    encode_snapshot,
)

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base class for snapshot publication failures."""


class NoSharedStorage(SyncError):
    """The shared directory is missing or not writable."""


class EncodingFailure(SyncError):
    """The compiled rules could not be serialized."""


class WriteFailure(SyncError):
    """Writing or renaming the snapshot file failed."""


@dataclass(frozen=True)
class PublishResult:
    """Outcome of one publish: a rule count on success, an error otherwise."""

    tier: str
    count: Optional[int] = None
    error: Optional[SyncError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RuleSyncChannel:
    """Writes compiled rule snapshots to a shared directory."""

    def __init__(self, shared_dir: Path, snapshot_name: str = DEFAULT_SNAPSHOT_NAME) -> None:
        self.shared_dir = Path(shared_dir).expanduser()
        self.snapshot_name = snapshot_name

    @property
    def snapshot_path(self) -> Path:
        return self.shared_dir / self.snapshot_name

    def publish(self, rules: Sequence[CompiledRule], tier: str = "simple") -> PublishResult:
        """Atomically replace the snapshot with ``rules``.

        Never raises; failures are reported in the returned PublishResult.
        Publishing the same rules twice leaves an equivalent snapshot.
        """
        if not self.shared_dir.is_dir() or not os.access(self.shared_dir, os.W_OK):
            error: SyncError = NoSharedStorage(f"Shared directory unavailable: {self.shared_dir}")
            logger.error(f"Snapshot publish ({tier}) failed: {error}")
            return PublishResult(tier=tier, error=error)

        try:
            text = encode_snapshot(RuleSnapshot(rules=list(rules), tier=tier))
        except (TypeError, ValueError) as e:
            error = EncodingFailure(f"Cannot encode {len(rules)} rules: {e}")
            logger.error(f"Snapshot publish ({tier}) failed: {error}")
            return PublishResult(tier=tier, error=error)

        try:
            atomic_write_text(self.snapshot_path, text)
        except OSError as e:
            error = WriteFailure(f"Cannot write {self.snapshot_path}: {e}")
            logger.error(f"Snapshot publish ({tier}) failed: {error}")
            return PublishResult(tier=tier, error=error)

        logger.info(f"Published {len(rules)} rules ({tier}) to {self.snapshot_path}")
        return PublishResult(tier=tier, count=len(rules))
