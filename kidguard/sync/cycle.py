"""Two-tier sync cycle.

The enhanced compile is started first, in a worker thread bounded by a
timeout. The simple compile is published unconditionally while it runs, so
the enforcement point always gets at least the simple rule set. A successful
enhanced result is then published over it.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from kidguard.models import Rule
from kidguard.sync.channel import PublishResult, RuleSyncChannel
from kidguard.sync.compiler import EnhancedResult, RuleCompiler

logger = logging.getLogger(__name__)

DEFAULT_ENHANCED_TIMEOUT = 30.0


@dataclass
class SyncReport:
    """What one sync cycle did."""

    reason: str
    simple: PublishResult
    enhanced: Optional[PublishResult] = None
    enhanced_error: Optional[str] = None
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.simple.ok or (self.enhanced is not None and self.enhanced.ok)

    @property
    def tier(self) -> Optional[str]:
        """Tier of the snapshot this cycle left in place, if it wrote one."""
        if self.enhanced is not None and self.enhanced.ok:
            return "enhanced"
        if self.simple.ok:
            return "simple"
        return None

    @property
    def error(self) -> Optional[str]:
        if self.ok:
            return None
        return str(self.simple.error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "tier": self.tier,
            "ok": self.ok,
            "simple_count": self.simple.count,
            "simple_error": str(self.simple.error) if self.simple.error else None,
            "enhanced_count": self.enhanced.count if self.enhanced else None,
            "enhanced_error": self.enhanced_error,
            "finished_at": self.finished_at.isoformat(),
        }


class SyncCycle:
    """Runs compile + publish for both tiers."""

    def __init__(
        self,
        compiler: RuleCompiler,
        channel: RuleSyncChannel,
        enhanced: bool = True,
        enhanced_timeout: float = DEFAULT_ENHANCED_TIMEOUT,
    ) -> None:
        self.compiler = compiler
        self.channel = channel
        self.enhanced = enhanced
        self.enhanced_timeout = enhanced_timeout

    async def run(self, rules: Sequence[Rule], reason: str = "manual") -> SyncReport:
        """Run one cycle. Tier failures are reported, never raised."""
        rules = list(rules)

        enhanced_task: Optional[asyncio.Task] = None
        if self.enhanced and self.compiler.classifier is not None:
            enhanced_task = asyncio.create_task(
                asyncio.wait_for(
                    asyncio.to_thread(self.compiler.compile_enhanced, rules),
                    timeout=self.enhanced_timeout,
                )
            )
            # Let the task hand the compile to its worker thread first
            await asyncio.sleep(0)

        simple = self.channel.publish(self.compiler.compile(rules), tier="simple")
        report = SyncReport(reason=reason, simple=simple)

        if enhanced_task is None:
            report.enhanced_error = "enhanced tier disabled"
        else:
            try:
                result: EnhancedResult = await enhanced_task
            except asyncio.TimeoutError:
                result = EnhancedResult(error=f"timed out after {self.enhanced_timeout:.1f}s")
            except Exception as e:
                result = EnhancedResult(error=str(e) or type(e).__name__)

            if result.rules is not None:
                report.enhanced = self.channel.publish(result.rules, tier="enhanced")
                if not report.enhanced.ok:
                    report.enhanced_error = str(report.enhanced.error)
            else:
                report.enhanced_error = result.error
                logger.info(f"Enhanced sync skipped ({reason}): {result.error}")

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Sync ({reason}) finished: tier={report.tier} "
            f"simple={simple.count if simple.ok else simple.error}"
        )
        return report
