"""Monitoring daemon.

Ties the pipeline together: keeps the published snapshot in step with the
rule store, evaluates intercepted flows in-process (with the classifier as a
fallback when heuristics find nothing), records monitoring events and
answers the local command channel.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Any, Optional

from kidguard.collectors.syslog_parsers import route_message
from kidguard.collectors.syslog_receiver import SyslogConfig, SyslogMessage, SyslogReceiver
from kidguard.config import Config
from kidguard.enforcement.matching import evaluate
from kidguard.ipc.command_server import CommandConfig, CommandServer
from kidguard.llm.classifier import ClassifierUnavailable, ContentClassifier, Label
from kidguard.models import (
    CompiledRule,
    Decision,
    Flow,
    MonitoringEvent,
    Rule,
    RuleAction,
)
from kidguard.notifiers.slack import SlackNotifier
from kidguard.policies.category_classifier import classify_hostname, clean_hostname
from kidguard.storage.db import RuleStore, StorageUnavailable
from kidguard.sync.channel import RuleSyncChannel
from kidguard.sync.compiler import RuleCompiler
from kidguard.sync.cycle import SyncCycle, SyncReport

logger = logging.getLogger(__name__)

DEFAULT_RULE_CHECK_INTERVAL = 5.0


class AlreadyRunning(Exception):
    """start() was called on a daemon that is already running."""


@dataclass
class DaemonStatus:
    running: bool
    classifier_available: bool
    simple_only: bool
    rule_count: int
    store_version: Optional[int]
    last_sync: Optional[SyncReport]
    last_sync_error: Optional[str]
    stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "classifier_available": self.classifier_available,
            "simple_only": self.simple_only,
            "rule_count": self.rule_count,
            "store_version": self.store_version,
            "last_sync": self.last_sync.to_dict() if self.last_sync else None,
            "last_sync_error": self.last_sync_error,
            "stats": dict(self.stats),
        }


class MonitoringDaemon:
    """Orchestrates sync, interception and the command channel."""

    def __init__(
        self,
        config: Config,
        store: RuleStore,
        classifier: Optional[ContentClassifier] = None,
        notifier: Optional[SlackNotifier] = None,
        rule_check_interval: float = DEFAULT_RULE_CHECK_INTERVAL,
    ) -> None:
        """Initialize the daemon.

        Args:
            config: Loaded configuration
            store: Connected rule store
            classifier: Ollama classifier, or None to run simple-tier only
            notifier: Optional Slack notifier for block/alert events
            rule_check_interval: How often (seconds) to poll the store version
        """
        self.config = config
        self.store = store
        self.classifier = classifier
        self.notifier = notifier
        self.rule_check_interval = rule_check_interval

        self.compiler = RuleCompiler(classifier)
        self.channel = RuleSyncChannel(config.shared_dir, config.snapshot_name)
        self.cycle = SyncCycle(
            self.compiler,
            self.channel,
            enhanced=config.sync_enhanced and classifier is not None,
            enhanced_timeout=config.sync_enhanced_timeout,
        )

        self._running = False
        self._simple_only = classifier is None
        self._pairs: list[tuple[CompiledRule, Rule]] = []
        self._store_version: Optional[int] = None
        self._last_sync: Optional[SyncReport] = None
        self._last_sync_error: Optional[str] = None
        self._sync_lock = asyncio.Lock()
        self._stop_event: Optional[asyncio.Event] = None

        self._receiver: Optional[SyslogReceiver] = None
        self._command_server: Optional[CommandServer] = None
        self._queue: Optional[asyncio.Queue[Flow]] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._notify_tasks: set[asyncio.Task] = set()

        self.stats = {
            "flows": 0,
            "flows_dropped": 0,
            "events": 0,
            "syncs": 0,
        }

    # --- lifecycle ---

    @property
    def running(self) -> bool:
        return self._running

    @property
    def command_server(self) -> Optional[CommandServer]:
        return self._command_server

    async def start(self) -> None:
        """Start the daemon.

        Order: classifier check, interception, command channel. Any failure
        tears down what already started and propagates.

        Raises:
            AlreadyRunning: If the daemon is already running
            ClassifierUnavailable: If the classifier is required but unreachable
            OSError: If a listener cannot bind
        """
        if self._running:
            raise AlreadyRunning("Monitoring daemon is already running")

        if self.classifier is not None:
            available = await asyncio.to_thread(self.classifier.check_available)
            if not available:
                if self.config.llm_required:
                    raise ClassifierUnavailable(
                        f"Ollama is not reachable (model {self.classifier.config.model})"
                    )
                logger.warning("Classifier unavailable, running simple-tier only")
                self._simple_only = True
                self.cycle.enhanced = False

        self._stop_event = asyncio.Event()
        try:
            if self.config.interception_enabled:
                self._queue = asyncio.Queue(maxsize=self.config.flow_queue_size)
                self._receiver = SyslogReceiver(
                    SyslogConfig(
                        port=self.config.syslog_port,
                        protocol=self.config.syslog_protocol,
                        bind_address=self.config.syslog_bind_address,
                        allowed_ips=self.config.syslog_allowed_ips,
                    ),
                    self._on_syslog,
                )
                await self._receiver.start()
                self._worker_task = asyncio.create_task(self._flow_worker())

            if self.config.command_enabled:
                self._command_server = CommandServer(
                    CommandConfig(host=self.config.command_host, port=self.config.command_port),
                    self.handle_command,
                )
                await self._command_server.start()
        except BaseException:
            await self._teardown()
            raise

        self._running = True
        logger.info("Monitoring daemon started")

        await self.sync("startup")
        self._sync_task = asyncio.create_task(self._sync_loop())

    async def stop(self) -> None:
        """Stop everything. Safe to call more than once."""
        was_running = self._running
        self._running = False
        await self._teardown()
        if self._stop_event is not None:
            self._stop_event.set()
        if was_running:
            logger.info("Monitoring daemon stopped")

    def request_stop(self) -> None:
        """Ask ``run_forever`` to shut down; usable from command handlers."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def _teardown(self) -> None:
        for task in (self._sync_task, self._worker_task, *self._notify_tasks):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._sync_task = None
        self._worker_task = None
        self._notify_tasks.clear()

        if self._receiver is not None:
            await self._receiver.stop()
            self._receiver = None
        if self._command_server is not None:
            await self._command_server.stop()
            self._command_server = None
        if self.notifier is not None:
            await self.notifier.close()
        self._queue = None

    async def run_forever(self) -> None:
        """Start, then run until SIGINT/SIGTERM or a stop command."""
        await self.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                pass

        try:
            assert self._stop_event is not None
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, ValueError):
                    pass
            await self.stop()

    # --- sync ---

    async def sync(self, reason: str = "explicit") -> Optional[SyncReport]:
        """Run one two-tier sync cycle.

        Returns:
            The cycle's report, or None if the rule store could not be read.
            Failures are recorded in status, never raised.
        """
        async with self._sync_lock:
            try:
                version = self.store.version()
                rules = self.store.list_active_rules()
            except StorageUnavailable as e:
                self._last_sync_error = f"rule store unavailable: {e}"
                logger.error(f"Sync ({reason}) skipped: {self._last_sync_error}")
                return None

            self._pairs = list(zip(self.compiler.compile(rules), rules))
            self._store_version = version

            report = await self.cycle.run(rules, reason=reason)
            self._last_sync = report
            self._last_sync_error = report.error
            self.stats["syncs"] += 1
            return report

    async def _sync_loop(self) -> None:
        loop = asyncio.get_running_loop()
        last_sync = loop.time()
        tick = min(self.rule_check_interval, self.config.sync_interval)
        while True:
            await asyncio.sleep(tick)
            try:
                version = self.store.version()
            except StorageUnavailable as e:
                self._last_sync_error = f"rule store unavailable: {e}"
                logger.warning(f"Rule change check failed: {e}")
                continue

            if version != self._store_version:
                await self.sync("rule_change")
                last_sync = loop.time()
            elif loop.time() - last_sync >= self.config.sync_interval:
                await self.sync("periodic")
                last_sync = loop.time()

    # --- flows ---

    def _on_syslog(self, msg: SyslogMessage) -> None:
        flow = route_message(msg)
        if flow is not None:
            self.submit_flow(flow)

    def submit_flow(self, flow: Flow) -> bool:
        """Queue a flow for evaluation. False if interception is not running or the queue is full."""
        if self._queue is None:
            return False
        try:
            self._queue.put_nowait(flow)
        except asyncio.QueueFull:
            self.stats["flows_dropped"] += 1
            logger.warning(f"Flow queue full, dropping {flow.hostname}")
            return False
        return True

    async def _flow_worker(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            flow = await queue.get()
            try:
                await self.handle_flow(flow)
            except Exception as e:
                logger.error(f"Error handling flow {flow.hostname}: {e}")
            finally:
                queue.task_done()

    async def _classify(self, hostname: str) -> Optional[Label]:
        if self.classifier is None or self._simple_only or not self.classifier.available:
            return None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.classifier.classify, hostname),
                timeout=self.config.llm_timeout,
            )
        except asyncio.TimeoutError:
            logger.debug(f"Classifier timed out for {hostname}")
            return None

    async def evaluate_flow(self, flow: Flow) -> Decision:
        """Decide a flow against the daemon's latest compiled rules.

        Uses heuristic categories first; only when neither they nor the
        interceptor's tags say anything is the classifier asked.
        """
        compiled = [c for c, _ in self._pairs]
        decision = evaluate(compiled, flow, redirect_url=self.config.redirect_url)
        if decision.matched or flow.categories or classify_hostname(flow.hostname):
            return decision

        label = await self._classify(clean_hostname(flow.hostname))
        if label is None:
            return decision
        return evaluate(
            compiled,
            flow,
            redirect_url=self.config.redirect_url,
            extra_categories=label.categories,
        )

    def _rule_for(self, decision: Decision) -> Optional[Rule]:
        if decision.rule is None:
            return None
        for compiled, rule in self._pairs:
            if compiled is decision.rule:
                return rule
        return None

    async def handle_flow(self, flow: Flow) -> Optional[MonitoringEvent]:
        """Evaluate a flow and record at most one event for it.

        Returns:
            The recorded event, or None when no block/alert rule matched
        """
        self.stats["flows"] += 1
        decision = await self.evaluate_flow(flow)
        rule = self._rule_for(decision)
        if rule is None:
            return None

        if rule.should_block:
            action = RuleAction.BLOCK
        elif RuleAction.ALERT in rule.actions:
            action = RuleAction.ALERT
        else:
            return None

        event = MonitoringEvent(
            type=flow.event_type,
            action=action,
            severity=rule.severity,
            url=flow.url or flow.hostname,
            content=f"{flow.client or 'unknown'} -> {flow.hostname}",
            rule_violated=rule.id,
            timestamp=flow.timestamp,
        )
        try:
            self.store.insert_event(event)
        except StorageUnavailable as e:
            logger.error(f"Could not record event for {flow.hostname}: {e}")
        self.stats["events"] += 1
        logger.info(f"{action.value.upper()} {flow.hostname} ({flow.client}) by rule '{rule.description}'")

        if self.notifier is not None:
            task = asyncio.create_task(self.notifier.send_event(event, rule.description))
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)
        return event

    # --- commands ---

    async def handle_command(self, request: dict[str, Any]) -> dict[str, Any]:
        """Answer one command-channel request."""
        command = request.get("command")
        try:
            if command == "status":
                result: Any = self.status().to_dict()
            elif command == "list_rules":
                result = [rule.to_dict() for rule in self.store.list_rules()]
            elif command == "add_rule":
                data = request.get("rule") or request
                rule = Rule.from_dict({k: v for k, v in data.items() if k != "command"})
                if not rule.description.strip():
                    raise ValueError("rule description is required")
                self.store.add_rule(rule)
                report = await self.sync("rule_change")
                result = {"id": rule.id, "sync": report.to_dict() if report else None}
            elif command == "remove_rule":
                rule_id = request.get("id")
                if not rule_id:
                    raise ValueError("'id' is required")
                removed = self.store.remove_rule(str(rule_id))
                if removed:
                    await self.sync("rule_change")
                result = {"removed": removed}
            elif command == "sync":
                report = await self.sync("explicit")
                if report is None:
                    return {"ok": False, "error": self._last_sync_error}
                result = report.to_dict()
            elif command == "stop":
                self.request_stop()
                result = "stopping"
            else:
                return {"ok": False, "error": f"unknown command: {command!r}"}
        except (StorageUnavailable, ValueError, KeyError) as e:
            return {"ok": False, "error": str(e)}

        return {"ok": True, "result": result}

    def status(self) -> DaemonStatus:
        return DaemonStatus(
            running=self._running,
            classifier_available=bool(self.classifier and self.classifier.available),
            simple_only=self._simple_only,
            rule_count=len(self._pairs),
            store_version=self._store_version,
            last_sync=self._last_sync,
            last_sync_error=self._last_sync_error,
            stats=dict(self.stats),
        )
