"""Rule snapshot file format.

A snapshot is a single JSON document holding the ordered compiled rules the
enforcement point evaluates. It is only ever replaced whole, through
``atomic_write_text``, so a reader sees either the previous or the next
snapshot and never a partial one.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from kidguard.models import CompiledRule

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "kidguard.rules"
SNAPSHOT_VERSION = 1
DEFAULT_SNAPSHOT_NAME = "rules.json"


class SnapshotFormatError(ValueError):
    """Snapshot content is not a recognizable kidguard rule snapshot."""


@dataclass
class RuleSnapshot:
    """Ordered compiled rules plus the metadata written alongside them."""

    rules: list[CompiledRule]
    tier: str = "simple"
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    published_at: Optional[datetime] = None  # file mtime, set when read back

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": SNAPSHOT_FORMAT,
            "version": SNAPSHOT_VERSION,
            "tier": self.tier,
            "generated_at": self.generated_at.isoformat(),
            "rules": [rule.to_dict() for rule in self.rules],
        }


def encode_snapshot(snapshot: RuleSnapshot) -> str:
    """Serialize a snapshot to its JSON text."""
    return json.dumps(snapshot.to_dict(), indent=2, sort_keys=True)


def decode_snapshot(text: str) -> RuleSnapshot:
    """Parse snapshot JSON text.

    Raises:
        SnapshotFormatError: If the text is not JSON, has the wrong format tag,
            an unknown schema version, or malformed rule records
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SnapshotFormatError(f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise SnapshotFormatError("snapshot is not a JSON object")
    if data.get("format") != SNAPSHOT_FORMAT:
        raise SnapshotFormatError(f"unexpected format tag: {data.get('format')!r}")
    if data.get("version") != SNAPSHOT_VERSION:
        raise SnapshotFormatError(f"unsupported snapshot version: {data.get('version')!r}")

    raw_rules = data.get("rules")
    if not isinstance(raw_rules, list):
        raise SnapshotFormatError("rules must be a list")

    try:
        rules = [CompiledRule.from_dict(item) for item in raw_rules]
    except (TypeError, KeyError, AttributeError) as e:
        raise SnapshotFormatError(f"malformed rule record: {e}") from e

    generated_at = datetime.now(timezone.utc)
    if data.get("generated_at"):
        try:
            generated_at = datetime.fromisoformat(str(data["generated_at"]))
        except ValueError:
            logger.debug(f"Ignoring bad generated_at: {data['generated_at']!r}")

    return RuleSnapshot(rules=rules, tier=str(data.get("tier", "simple")), generated_at=generated_at)


def read_snapshot(path: Path) -> Optional[RuleSnapshot]:
    """Read a snapshot file.

    Returns:
        The snapshot, or None when the file is missing, unreadable, malformed
        or of an unknown version
    """
    path = Path(path)
    try:
        stat = path.stat()
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug(f"No snapshot at {path}")
        return None
    except OSError as e:
        logger.warning(f"Cannot read snapshot {path}: {e}")
        return None

    try:
        snapshot = decode_snapshot(text)
    except SnapshotFormatError as e:
        logger.warning(f"Ignoring snapshot {path}: {e}")
        return None

    snapshot.published_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    return snapshot


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    """Write ``text`` to ``path`` atomically using a temp file + fsync + rename.

    The temp file lives in the destination directory so the final
    ``os.replace`` never crosses filesystems. Any leftover temp file is
    removed on failure and the existing file is left untouched.
    """
    path = Path(path)
    tmp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding=encoding,
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as f:
            tmp_path = Path(f.name)
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(tmp_path, 0o644)
        os.replace(str(tmp_path), str(path))
        tmp_path = None
    finally:
        if tmp_path is not None and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                logger.debug(f"Could not remove temp file {tmp_path}")
