"""Rule compilation and snapshot publication."""

from kidguard.sync.channel import (
    EncodingFailure,
    NoSharedStorage,
    PublishResult,
    RuleSyncChannel,
    SyncError,
    WriteFailure,
)
from kidguard.sync.compiler import EnhancedResult, RuleCompiler, extract_domain_patterns
from kidguard.sync.cycle import SyncCycle, SyncReport
from kidguard.sync.snapshot import (
    SNAPSHOT_FORMAT,
    SNAPSHOT_VERSION,
    RuleSnapshot,
    atomic_write_text,
    read_snapshot,
)

__all__ = [
    "EncodingFailure",
    "EnhancedResult",
    "NoSharedStorage",
    "PublishResult",
    "RuleCompiler",
    "RuleSnapshot",
    "RuleSyncChannel",
    "SNAPSHOT_FORMAT",
    "SNAPSHOT_VERSION",
    "SyncCycle",
    "SyncError",
    "SyncReport",
    "WriteFailure",
    "atomic_write_text",
    "extract_domain_patterns",
    "read_snapshot",
]
