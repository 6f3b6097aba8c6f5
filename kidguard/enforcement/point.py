"""Sandboxed enforcement point.

Reads the published rule snapshot and decides allow/block/redirect for live
flows. It never talks to the daemon, the rule store or the classifier: the
snapshot file is its only input, and without a usable snapshot every flow is
allowed.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cachetools import TTLCache

from kidguard.enforcement.matching import evaluate
from kidguard.models import ALLOW, Decision, Flow
from kidguard.sync.snapshot import RuleSnapshot, read_snapshot

logger = logging.getLogger(__name__)

DEFAULT_DECISION_CACHE_TTL = 60
DEFAULT_DECISION_CACHE_SIZE = 4096


class EnforcementPoint:
    """Decides flows against the latest readable snapshot."""

    def __init__(
        self,
        snapshot_path: Path,
        poll_interval: Optional[float] = None,
        redirect_url: Optional[str] = None,
        cache_ttl: int = DEFAULT_DECISION_CACHE_TTL,
        cache_size: int = DEFAULT_DECISION_CACHE_SIZE,
    ) -> None:
        """Initialize and load the snapshot.

        Args:
            snapshot_path: Well-known snapshot file in the shared directory
            poll_interval: If set, re-check the file for changes at most this
                often (seconds) while deciding flows
            redirect_url: Block page to redirect URL-bearing flows to
            cache_ttl: Decision cache lifetime in seconds
            cache_size: Maximum cached decisions
        """
        self.snapshot_path = Path(snapshot_path).expanduser()
        self.poll_interval = poll_interval
        self.redirect_url = redirect_url
        self._snapshot: Optional[RuleSnapshot] = None
        self._file_signature: Optional[tuple[float, int]] = None
        self._last_check = 0.0
        self._lock = threading.Lock()
        self._cache: TTLCache[tuple, Decision] = TTLCache(maxsize=cache_size, ttl=cache_ttl)
        self.load()

    @property
    def snapshot(self) -> Optional[RuleSnapshot]:
        return self._snapshot

    @property
    def rule_count(self) -> int:
        return len(self._snapshot.rules) if self._snapshot else 0

    def _signature(self) -> Optional[tuple[float, int]]:
        try:
            stat = self.snapshot_path.stat()
        except OSError:
            return None
        return (stat.st_mtime, stat.st_size)

    def load(self) -> bool:
        """(Re)read the snapshot file.

        Returns:
            True if a usable snapshot is loaded. On False the point fails open.
        """
        snapshot = read_snapshot(self.snapshot_path)
        with self._lock:
            self._snapshot = snapshot
            self._file_signature = self._signature()
            self._last_check = time.monotonic()
            self._cache.clear()

        if snapshot is None:
            logger.warning(f"No usable snapshot at {self.snapshot_path}, failing open")
            return False
        logger.info(f"Loaded {len(snapshot.rules)} rules ({snapshot.tier}) from {self.snapshot_path}")
        return True

    def reload(self) -> bool:
        """Explicit reload, e.g. on SIGHUP."""
        return self.load()

    def _maybe_poll(self) -> None:
        if self.poll_interval is None:
            return
        now = time.monotonic()
        if now - self._last_check < self.poll_interval:
            return
        self._last_check = now
        if self._signature() != self._file_signature:
            logger.debug(f"Snapshot {self.snapshot_path} changed, reloading")
            self.load()

    def decide(self, flow: Flow) -> Decision:
        """Return the verdict for one flow."""
        self._maybe_poll()

        snapshot = self._snapshot
        if snapshot is None:
            return ALLOW

        key = (flow.hostname.lower(), flow.url, tuple(sorted(flow.categories)))
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        decision = evaluate(snapshot.rules, flow, redirect_url=self.redirect_url)
        with self._lock:
            self._cache[key] = decision
        return decision

    def snapshot_age(self) -> Optional[float]:
        """Seconds since the loaded snapshot was published, or None."""
        snapshot = self._snapshot
        if snapshot is None or snapshot.published_at is None:
            return None
        return (datetime.now(timezone.utc) - snapshot.published_at).total_seconds()

    def is_stale(self, max_age: float) -> bool:
        """True when there is no snapshot or it is older than ``max_age`` seconds."""
        age = self.snapshot_age()
        return age is None or age > max_age
