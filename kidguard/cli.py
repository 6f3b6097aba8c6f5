"""Command-line interface for kidguard."""

import asyncio
import json
import logging
import signal
import sys
import time
from datetime import datetime
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from kidguard import __version__
from kidguard.config import Config, find_config_file, load_config, merge_cli_options
from kidguard.models import Flow, Rule, RuleAction, Severity, Verdict
from kidguard.storage import RuleStore, StorageUnavailable

console = Console()

SEVERITY_STYLES = {
    "low": "blue",
    "medium": "yellow",
    "high": "red",
    "critical": "red bold",
}

VERDICT_STYLES = {
    Verdict.ALLOW: "green",
    Verdict.BLOCK: "red",
    Verdict.REDIRECT: "yellow",
}


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def open_store(cfg: Config, read_only: bool = False) -> RuleStore:
    """Connect to the rule store, exiting with a message on failure."""
    store = RuleStore(cfg.db_path, read_only=read_only)
    try:
        store.connect()
    except StorageUnavailable as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    return store


def build_classifier(cfg: Config):
    from kidguard.llm import ContentClassifier, LLMConfig

    return ContentClassifier(
        LLMConfig(model=cfg.llm_model, host=cfg.llm_host, timeout_seconds=cfg.llm_timeout)
    )


def format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M")


@click.group()
@click.version_option(__version__, prog_name="kidguard")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to config file (default: searches standard locations)",
)
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the DuckDB rule database",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None, db: Path | None) -> None:
    """kidguard - parental content monitoring and rule enforcement."""
    ctx.ensure_object(dict)

    cfg = load_config(config)
    merge_cli_options(cfg, db=db)
    ctx.obj["config"] = cfg

    config_path = config or find_config_file()
    if config_path:
        ctx.obj["config_path"] = config_path


# --- daemon ---


@main.command()
@click.option("--port", type=int, default=None, help="Syslog port (default: 1514)")
@click.option("--protocol", type=click.Choice(["udp", "tcp", "both"]), default=None, help="Syslog protocol")
@click.option("--bind", type=str, default=None, help="Syslog bind address (default: 127.0.0.1)")
@click.option("--allow", type=str, multiple=True, help="Allowed syslog source IPs (can specify multiple)")
@click.option("--command-port", type=int, default=None, help="Command channel port (default: 7767)")
@click.option("--shared-dir", type=click.Path(path_type=Path), default=None, help="Snapshot directory")
@click.option("--llm/--no-llm", default=None, help="Use Ollama for enhanced sync and flow classification")
@click.option("--llm-model", type=str, default=None, help="Ollama model (default: mistral:7b-instruct)")
@click.option("--llm-optional", is_flag=True, default=False, help="Start in simple-tier mode if Ollama is down")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def run(
    ctx: click.Context,
    port: int | None,
    protocol: str | None,
    bind: str | None,
    allow: tuple[str, ...],
    command_port: int | None,
    shared_dir: Path | None,
    llm: bool | None,
    llm_model: str | None,
    llm_optional: bool,
    verbose: bool,
) -> None:
    """Run the monitoring daemon.

    Keeps the shared rule snapshot in sync with the rule store, evaluates
    flows forwarded as syslog and answers `kidguard ctl` commands.

    Example:
        kidguard run --port 1514 --protocol udp

    Resolver configuration (Pi-hole), /etc/rsyslog.d/99-kidguard.conf:
        if $programname == 'dnsmasq' then @<hub-ip>:1514
    """
    from kidguard.daemon import MonitoringDaemon
    from kidguard.llm import ClassifierUnavailable

    cfg: Config = ctx.obj["config"]
    merge_cli_options(
        cfg,
        port=port,
        protocol=protocol,
        bind=bind,
        allow=allow,
        command_port=command_port,
        shared_dir=shared_dir,
        llm=llm,
        llm_model=llm_model,
        llm_required=False if llm_optional else None,
    )
    setup_logging(verbose)

    if "config_path" in ctx.obj:
        console.print(f"[dim]Config: {ctx.obj['config_path']}[/dim]")

    try:
        cfg.shared_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        console.print(f"[yellow]Cannot create shared directory {cfg.shared_dir}: {e}[/yellow]")

    store = open_store(cfg)
    classifier = build_classifier(cfg) if cfg.llm_enabled else None

    notifier = None
    if cfg.slack_enabled and cfg.slack_webhook_url:
        from kidguard.notifiers import SlackConfig, SlackNotifier

        notifier = SlackNotifier(
            SlackConfig(
                webhook_url=cfg.slack_webhook_url,
                min_severity=Severity.parse(cfg.slack_min_severity),
            )
        )

    daemon = MonitoringDaemon(cfg, store, classifier=classifier, notifier=notifier)

    console.print(f"[green]Snapshot: {cfg.snapshot_path}[/green]")
    if cfg.interception_enabled:
        console.print(
            f"[green]Syslog on {cfg.syslog_bind_address}:{cfg.syslog_port} ({cfg.syslog_protocol})[/green]"
        )
    if cfg.command_enabled:
        console.print(f"[green]Commands on {cfg.command_host}:{cfg.command_port}[/green]")
    if classifier is not None:
        console.print(f"[cyan]LLM: {cfg.llm_model}{'' if cfg.llm_required else ' (optional)'}[/cyan]")
    if notifier is not None:
        console.print(f"[cyan]Slack notifications: {cfg.slack_min_severity}+ severity[/cyan]")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    console.print()

    try:
        asyncio.run(daemon.run_forever())
    except ClassifierUnavailable as e:
        console.print(f"[red]{e}[/red]")
        console.print("[dim]Start Ollama, or pass --llm-optional / --no-llm[/dim]")
        sys.exit(1)
    except OSError as e:
        console.print(f"[red]Startup failed: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    finally:
        store.close()

    stats = daemon.stats
    console.print()
    console.print("[green]Daemon stopped[/green]")
    console.print(f"  Flows evaluated: {stats['flows']:,}")
    console.print(f"  Flows dropped: {stats['flows_dropped']:,}")
    console.print(f"  Events recorded: {stats['events']:,}")
    console.print(f"  Sync cycles: {stats['syncs']:,}")


@main.command()
@click.option("--llm/--no-llm", default=None, help="Attempt the enhanced tier")
@click.pass_context
def sync(ctx: click.Context, llm: bool | None) -> None:
    """Compile the rule store and publish the snapshot once."""
    from kidguard.sync import RuleCompiler, RuleSyncChannel, SyncCycle

    cfg: Config = ctx.obj["config"]
    merge_cli_options(cfg, llm=llm)

    store = open_store(cfg, read_only=True)
    try:
        rules = store.list_active_rules()
    except StorageUnavailable as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    finally:
        store.close()

    classifier = None
    if cfg.llm_enabled:
        classifier = build_classifier(cfg)
        if not classifier.check_available():
            console.print("[yellow]Ollama unavailable, publishing simple tier only[/yellow]")

    cycle = SyncCycle(
        RuleCompiler(classifier),
        RuleSyncChannel(cfg.shared_dir, cfg.snapshot_name),
        enhanced=cfg.sync_enhanced and classifier is not None,
        enhanced_timeout=cfg.sync_enhanced_timeout,
    )
    report = asyncio.run(cycle.run(rules, reason="cli"))

    if report.simple.ok:
        console.print(f"[green]Simple tier: {report.simple.count} rules published[/green]")
    else:
        console.print(f"[red]Simple tier failed: {report.simple.error}[/red]")
    if report.enhanced is not None and report.enhanced.ok:
        console.print(f"[green]Enhanced tier: {report.enhanced.count} rules published[/green]")
    elif report.enhanced_error:
        console.print(f"[dim]Enhanced tier skipped: {report.enhanced_error}[/dim]")

    if not report.ok:
        sys.exit(1)


# --- rules ---


@main.group()
def rules() -> None:
    """Manage parental control rules."""


@rules.command("add")
@click.argument("description")
@click.option("--category", "-c", "categories", multiple=True, help="Category tag (repeatable)")
@click.option(
    "--action",
    "-a",
    "actions",
    multiple=True,
    type=click.Choice([a.value for a in RuleAction]),
    help="Action (repeatable, default: block)",
)
@click.option("--severity", type=click.Choice([s.value for s in Severity]), default="medium")
@click.option("--inactive", is_flag=True, help="Create the rule disabled")
@click.pass_context
def rules_add(
    ctx: click.Context,
    description: str,
    categories: tuple[str, ...],
    actions: tuple[str, ...],
    severity: str,
    inactive: bool,
) -> None:
    """Add a rule, e.g. kidguard rules add "No social media" -c social_media"""
    rule = Rule(
        description=description,
        categories=list(categories),
        actions=list(actions) or [RuleAction.BLOCK],
        severity=Severity(severity),
        is_active=not inactive,
    )
    with open_store(ctx.obj["config"]) as store:
        store.add_rule(rule)
    console.print(f"[green]Added rule {rule.id}[/green]")
    console.print("[dim]A running daemon publishes it within a few seconds; otherwise run `kidguard sync`[/dim]")


@rules.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include inactive rules")
@click.pass_context
def rules_list(ctx: click.Context, show_all: bool) -> None:
    """List rules."""
    with open_store(ctx.obj["config"], read_only=True) as store:
        rule_list = store.list_rules() if show_all else store.list_active_rules()

    if not rule_list:
        console.print("[dim]No rules[/dim]")
        return

    table = Table(title="Rules")
    table.add_column("ID", style="dim")
    table.add_column("Description")
    table.add_column("Categories")
    table.add_column("Actions")
    table.add_column("Severity")
    table.add_column("Active")

    for rule in rule_list:
        style = SEVERITY_STYLES.get(rule.severity.value, "white")
        table.add_row(
            rule.id[:8],
            rule.description[:50],
            ", ".join(rule.categories),
            ", ".join(a.value for a in rule.actions),
            f"[{style}]{rule.severity.value.upper()}[/{style}]",
            "yes" if rule.is_active else "[dim]no[/dim]",
        )

    console.print(table)


def _resolve_rule_id(store: RuleStore, prefix: str) -> str:
    """Accept a full rule id or a unique prefix as shown by `rules list`."""
    matches = [r.id for r in store.list_rules() if r.id.startswith(prefix)]
    if len(matches) != 1:
        console.print(f"[red]{'No' if not matches else 'Ambiguous'} rule id: {prefix}[/red]")
        sys.exit(1)
    return matches[0]


@rules.command("remove")
@click.argument("rule_id")
@click.pass_context
def rules_remove(ctx: click.Context, rule_id: str) -> None:
    """Delete a rule."""
    with open_store(ctx.obj["config"]) as store:
        store.remove_rule(_resolve_rule_id(store, rule_id))
    console.print("[green]Rule removed[/green]")


@rules.command("enable")
@click.argument("rule_id")
@click.pass_context
def rules_enable(ctx: click.Context, rule_id: str) -> None:
    """Activate a rule."""
    with open_store(ctx.obj["config"]) as store:
        store.set_rule_active(_resolve_rule_id(store, rule_id), True)
    console.print("[green]Rule enabled[/green]")


@rules.command("disable")
@click.argument("rule_id")
@click.pass_context
def rules_disable(ctx: click.Context, rule_id: str) -> None:
    """Deactivate a rule without deleting it."""
    with open_store(ctx.obj["config"]) as store:
        store.set_rule_active(_resolve_rule_id(store, rule_id), False)
    console.print("[green]Rule disabled[/green]")


# --- events ---


@main.command()
@click.option("--limit", type=int, default=50)
@click.option("--unprocessed", is_flag=True, help="Only events not yet reviewed")
@click.option("--ack", "ack_ids", multiple=True, help="Mark event id(s) as processed")
@click.pass_context
def events(ctx: click.Context, limit: int, unprocessed: bool, ack_ids: tuple[str, ...]) -> None:
    """Show recent monitoring events."""
    cfg: Config = ctx.obj["config"]

    if ack_ids:
        with open_store(cfg) as store:
            for event_id in ack_ids:
                if store.mark_event_processed(event_id):
                    console.print(f"[green]Marked {event_id} processed[/green]")
                else:
                    console.print(f"[yellow]No event {event_id}[/yellow]")
        return

    with open_store(cfg, read_only=True) as store:
        event_list = store.get_events(limit=limit, unprocessed_only=unprocessed)

    if not event_list:
        console.print("[green]No events[/green]")
        return

    table = Table(title="Monitoring Events")
    table.add_column("Time", style="dim")
    table.add_column("Action")
    table.add_column("Severity")
    table.add_column("URL")
    table.add_column("Content")
    table.add_column("Done")
    table.add_column("ID", style="dim")

    for event in event_list:
        style = SEVERITY_STYLES.get(event.severity.value, "white")
        table.add_row(
            format_time(event.timestamp),
            event.action.value,
            f"[{style}]{event.severity.value.upper()}[/{style}]",
            (event.url or "")[:40],
            (event.content or "")[:40],
            "yes" if event.processed else "",
            event.id,
        )

    console.print(table)


@main.command()
@click.option("--hours", type=int, default=24, help="Hours to look back")
@click.pass_context
def stats(ctx: click.Context, hours: int) -> None:
    """Show event counts by action and severity."""
    with open_store(ctx.obj["config"], read_only=True) as store:
        rows = store.get_event_stats(hours)

    if not rows:
        console.print(f"[dim]No events in the last {hours}h[/dim]")
        return

    table = Table(title=f"Events (last {hours}h)")
    table.add_column("Action")
    table.add_column("Severity")
    table.add_column("Total", justify="right")
    table.add_column("Unprocessed", justify="right")
    for row in rows:
        table.add_row(row["action"], row["severity"], f"{row['total']:,}", f"{row['unprocessed'] or 0:,}")
    console.print(table)


# --- enforcement ---


def _build_enforcement_point(cfg: Config, poll: bool):
    from kidguard.enforcement import EnforcementPoint

    return EnforcementPoint(
        cfg.snapshot_path,
        poll_interval=cfg.enforcement_poll_interval if poll else None,
        redirect_url=cfg.redirect_url,
    )


@main.command()
@click.argument("hostname")
@click.option("--url", type=str, default=None, help="Full URL of the request")
@click.option("--category", "categories", multiple=True, help="Category tag supplied by the interceptor")
@click.pass_context
def decide(ctx: click.Context, hostname: str, url: str | None, categories: tuple[str, ...]) -> None:
    """Decide one flow against the published snapshot."""
    cfg: Config = ctx.obj["config"]
    point = _build_enforcement_point(cfg, poll=False)

    if point.snapshot is None:
        console.print(f"[yellow]No usable snapshot at {cfg.snapshot_path} (failing open)[/yellow]")
    elif point.is_stale(cfg.snapshot_max_age):
        console.print(f"[yellow]Snapshot is stale ({point.snapshot_age():.0f}s old)[/yellow]")

    decision = point.decide(Flow(hostname=hostname, url=url, categories=tuple(categories)))
    style = VERDICT_STYLES[decision.verdict]
    console.print(f"[{style}]{decision.verdict.value.upper()}[/{style}] {hostname}")
    if decision.rule is not None:
        console.print(f"  Rule: {decision.rule.description}")
    if decision.redirect_url:
        console.print(f"  Redirect: {decision.redirect_url}")


@main.command()
@click.option("--verbose", "-v", is_flag=True, help="Debug logging (stderr)")
@click.pass_context
def enforce(ctx: click.Context, verbose: bool) -> None:
    """Decide flows read from stdin as JSON lines.

    Each input line is a flow object ({"hostname": ..., "url": ...,
    "categories": [...]}); each output line is the decision. SIGHUP reloads
    the snapshot.
    """
    cfg: Config = ctx.obj["config"]
    setup_logging(verbose)
    point = _build_enforcement_point(cfg, poll=True)

    try:
        signal.signal(signal.SIGHUP, lambda signum, frame: point.reload())
    except (AttributeError, ValueError):
        pass

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            flow = Flow.from_dict(json.loads(line))
        except (json.JSONDecodeError, AttributeError) as e:
            click.echo(json.dumps({"error": f"bad flow: {e}"}))
            continue

        decision = point.decide(flow)
        click.echo(
            json.dumps(
                {
                    "hostname": flow.hostname,
                    "verdict": decision.verdict.value,
                    "rule": decision.rule.description if decision.rule else None,
                    "redirect_url": decision.redirect_url,
                }
            )
        )
        sys.stdout.flush()


# --- extension lifecycle ---


def _build_lifecycle(cfg: Config):
    from kidguard.extension import (
        CommandApprovalProtocol,
        ExtensionLifecycleManager,
        ManualApprovalProtocol,
    )

    protocol = CommandApprovalProtocol(cfg.extension_helper) if cfg.extension_helper else ManualApprovalProtocol()
    return ExtensionLifecycleManager(protocol, cfg.extension_id, state_path=cfg.extension_state_path)


def _print_lifecycle_status(status) -> None:
    console.print(f"State: [bold]{status.state.value}[/bold]")
    if status.pending_operation:
        console.print(f"Pending: {status.pending_operation.value}")
    if status.last_error:
        style = "red bold" if status.permission_required else "red"
        console.print(f"[{style}]Last error: {status.last_error}[/{style}]")


def _run_lifecycle(ctx: click.Context, operation: str, timeout: float) -> None:
    from kidguard.extension import ExtensionState, LifecycleError

    cfg: Config = ctx.obj["config"]
    if not cfg.extension_helper:
        console.print("[red]No approval helper configured ([extension] helper)[/red]")
        sys.exit(1)

    manager = _build_lifecycle(cfg)
    manager.resume()
    try:
        getattr(manager, operation)()
    except LifecycleError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    announced_approval = False
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = manager.status()
        if status.pending_operation is None or status.state == ExtensionState.WILL_COMPLETE_AFTER_REBOOT:
            break
        if status.state == ExtensionState.WAITING_FOR_APPROVAL and not announced_approval:
            console.print("[yellow]Waiting for user approval in system settings...[/yellow]")
            announced_approval = True
        time.sleep(0.1)

    manager.protocol.close()
    status = manager.status()
    _print_lifecycle_status(status)
    if status.state == ExtensionState.WILL_COMPLETE_AFTER_REBOOT:
        console.print("[yellow]Reboot required to complete[/yellow]")
    if status.last_error:
        sys.exit(1)


@main.group()
def extension() -> None:
    """Manage the enforcement extension."""


@extension.command("install")
@click.option("--timeout", type=float, default=300.0, help="Seconds to wait for the host")
@click.pass_context
def extension_install(ctx: click.Context, timeout: float) -> None:
    """Install the enforcement extension."""
    _run_lifecycle(ctx, "install", timeout)


@extension.command("uninstall")
@click.option("--timeout", type=float, default=300.0, help="Seconds to wait for the host")
@click.pass_context
def extension_uninstall(ctx: click.Context, timeout: float) -> None:
    """Remove the enforcement extension."""
    _run_lifecycle(ctx, "uninstall", timeout)


@extension.command("enable")
@click.option("--timeout", type=float, default=300.0, help="Seconds to wait for the host")
@click.pass_context
def extension_enable(ctx: click.Context, timeout: float) -> None:
    """Enable the installed extension."""
    _run_lifecycle(ctx, "enable", timeout)


@extension.command("disable")
@click.option("--timeout", type=float, default=300.0, help="Seconds to wait for the host")
@click.pass_context
def extension_disable(ctx: click.Context, timeout: float) -> None:
    """Disable the installed extension."""
    _run_lifecycle(ctx, "disable", timeout)


@extension.command("status")
@click.pass_context
def extension_status(ctx: click.Context) -> None:
    """Show the recorded extension state."""
    manager = _build_lifecycle(ctx.obj["config"])
    _print_lifecycle_status(manager.status())


# --- daemon control ---


def _send(cfg: Config, command: str, **params) -> dict:
    from kidguard.ipc import send_command

    try:
        response = asyncio.run(send_command(command, host=cfg.command_host, port=cfg.command_port, **params))
    except (ConnectionError, OSError, asyncio.TimeoutError) as e:
        console.print(f"[red]Daemon not reachable on {cfg.command_host}:{cfg.command_port}: {e}[/red]")
        sys.exit(1)
    if not response.get("ok"):
        console.print(f"[red]{response.get('error')}[/red]")
        sys.exit(1)
    return response


@main.group()
def ctl() -> None:
    """Control a running daemon."""


@ctl.command("status")
@click.pass_context
def ctl_status(ctx: click.Context) -> None:
    """Show daemon status."""
    result = _send(ctx.obj["config"], "status")["result"]
    console.print(f"Running: {'yes' if result['running'] else 'no'}")
    console.print(f"Classifier: {'available' if result['classifier_available'] else 'unavailable'}")
    if result["simple_only"]:
        console.print("[yellow]Simple tier only[/yellow]")
    console.print(f"Rules: {result['rule_count']}")
    last_sync = result.get("last_sync")
    if last_sync:
        console.print(f"Last sync: {last_sync['finished_at'][:19]} ({last_sync['reason']}, tier={last_sync['tier']})")
    if result.get("last_sync_error"):
        console.print(f"[red]Sync error: {result['last_sync_error']}[/red]")
    for name, value in result["stats"].items():
        console.print(f"  {name}: {value:,}")


@ctl.command("sync")
@click.pass_context
def ctl_sync(ctx: click.Context) -> None:
    """Trigger a sync cycle."""
    result = _send(ctx.obj["config"], "sync")["result"]
    console.print(f"[green]Synced: tier={result['tier']}[/green]")
    if result.get("enhanced_error"):
        console.print(f"[dim]Enhanced tier: {result['enhanced_error']}[/dim]")


@ctl.command("stop")
@click.pass_context
def ctl_stop(ctx: click.Context) -> None:
    """Stop the daemon."""
    _send(ctx.obj["config"], "stop")
    console.print("[green]Daemon stopping[/green]")


@ctl.command("add-rule")
@click.argument("description")
@click.option("--category", "-c", "categories", multiple=True, help="Category tag (repeatable)")
@click.option(
    "--action",
    "-a",
    "actions",
    multiple=True,
    type=click.Choice([a.value for a in RuleAction]),
    help="Action (repeatable, default: block)",
)
@click.option("--severity", type=click.Choice([s.value for s in Severity]), default="medium")
@click.pass_context
def ctl_add_rule(
    ctx: click.Context,
    description: str,
    categories: tuple[str, ...],
    actions: tuple[str, ...],
    severity: str,
) -> None:
    """Add a rule through the daemon and sync immediately."""
    rule = {
        "description": description,
        "categories": list(categories),
        "actions": list(actions) or ["block"],
        "severity": severity,
    }
    result = _send(ctx.obj["config"], "add_rule", rule=rule)["result"]
    console.print(f"[green]Added rule {result['id']}[/green]")


if __name__ == "__main__":
    main()
