"""Configuration loading for kidguard.

Loads settings from TOML config file with CLI override support.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli

logger = logging.getLogger(__name__)


def get_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "kidguard"


def get_config_search_paths() -> list[Path]:
    """Get list of paths to search for config file."""
    return [
        Path("kidguard.toml"),  # Current directory
        Path.home() / ".config" / "kidguard" / "kidguard.toml",
        Path("/etc/kidguard/kidguard.toml"),
    ]


def find_config_file() -> Optional[Path]:
    """Find the first existing config file."""
    for path in get_config_search_paths():
        if path.exists():
            return path
    return None


@dataclass
class Config:
    """Loaded configuration with all sections."""

    # Storage
    db_path: Path = field(default_factory=lambda: get_data_dir() / "rules.db")

    # Sync
    shared_dir: Path = field(default_factory=lambda: get_data_dir() / "shared")
    snapshot_name: str = "rules.json"
    sync_interval: float = 300.0  # seconds between periodic syncs
    sync_enhanced: bool = True
    sync_enhanced_timeout: float = 30.0

    # LLM
    llm_enabled: bool = True
    llm_required: bool = True  # refuse to start when Ollama is unreachable
    llm_model: str = "mistral:7b-instruct"
    llm_host: Optional[str] = None
    llm_timeout: float = 10.0

    # Interception (syslog from resolver/proxy)
    interception_enabled: bool = True
    syslog_port: int = 1514
    syslog_protocol: str = "udp"
    syslog_bind_address: str = "127.0.0.1"  # Localhost only by default for security
    syslog_allowed_ips: list[str] = field(default_factory=list)
    flow_queue_size: int = 10000

    # Command channel
    command_enabled: bool = True
    command_host: str = "127.0.0.1"
    command_port: int = 7767

    # Enforcement point
    redirect_url: Optional[str] = None
    enforcement_poll_interval: Optional[float] = 5.0
    snapshot_max_age: float = 3600.0

    # Extension lifecycle
    extension_id: str = "org.kidguard.filter"
    extension_helper: list[str] = field(default_factory=list)
    extension_state_path: Path = field(default_factory=lambda: get_data_dir() / "extension.json")

    # Slack
    slack_enabled: bool = False
    slack_webhook_url: Optional[str] = None
    slack_min_severity: str = "medium"

    @property
    def snapshot_path(self) -> Path:
        return self.shared_dir / self.snapshot_name


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from TOML file.

    Args:
        config_path: Explicit path to config file, or None to search

    Returns:
        Config object with loaded values
    """
    config = Config()

    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        logger.debug("No config file found, using defaults")
        return config

    logger.info(f"Loading config from {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config file: {e}")
        return config

    if "storage" in data:
        storage = data["storage"]
        if "db_path" in storage:
            config.db_path = Path(storage["db_path"]).expanduser()

    if "sync" in data:
        sync = data["sync"]
        if "shared_dir" in sync:
            config.shared_dir = Path(sync["shared_dir"]).expanduser()
        if "snapshot_name" in sync:
            config.snapshot_name = sync["snapshot_name"]
        if "interval" in sync:
            config.sync_interval = float(sync["interval"])
        if "enhanced" in sync:
            config.sync_enhanced = sync["enhanced"]
        if "enhanced_timeout" in sync:
            config.sync_enhanced_timeout = float(sync["enhanced_timeout"])

    if "llm" in data:
        llm = data["llm"]
        if "enabled" in llm:
            config.llm_enabled = llm["enabled"]
        if "required" in llm:
            config.llm_required = llm["required"]
        if "model" in llm:
            config.llm_model = llm["model"]
        if "host" in llm:
            config.llm_host = llm["host"]
        if "timeout" in llm:
            config.llm_timeout = float(llm["timeout"])

    if "interception" in data:
        interception = data["interception"]
        if "enabled" in interception:
            config.interception_enabled = interception["enabled"]
        if "port" in interception:
            config.syslog_port = interception["port"]
        if "protocol" in interception:
            config.syslog_protocol = interception["protocol"]
        if "bind_address" in interception:
            config.syslog_bind_address = interception["bind_address"]
        if "allowed_ips" in interception:
            config.syslog_allowed_ips = interception["allowed_ips"]
        if "queue_size" in interception:
            config.flow_queue_size = interception["queue_size"]

    if "command" in data:
        command = data["command"]
        if "enabled" in command:
            config.command_enabled = command["enabled"]
        if "host" in command:
            config.command_host = command["host"]
        if "port" in command:
            config.command_port = command["port"]

    if "enforcement" in data:
        enforcement = data["enforcement"]
        if "redirect_url" in enforcement:
            config.redirect_url = enforcement["redirect_url"] or None
        if "poll_interval" in enforcement:
            # 0 disables polling; reload on SIGHUP only
            config.enforcement_poll_interval = float(enforcement["poll_interval"]) or None
        if "max_age" in enforcement:
            config.snapshot_max_age = float(enforcement["max_age"])

    if "extension" in data:
        extension = data["extension"]
        if "id" in extension:
            config.extension_id = extension["id"]
        if "helper" in extension:
            helper = extension["helper"]
            config.extension_helper = helper.split() if isinstance(helper, str) else list(helper)
        if "state_path" in extension:
            config.extension_state_path = Path(extension["state_path"]).expanduser()

    if "slack" in data:
        slack = data["slack"]
        if "enabled" in slack:
            config.slack_enabled = slack["enabled"]
        if "webhook_url" in slack:
            config.slack_webhook_url = slack["webhook_url"]
        if "min_severity" in slack:
            config.slack_min_severity = slack["min_severity"]

    return config


def merge_cli_options(config: Config, **cli_options: Any) -> Config:
    """Merge CLI options into config (CLI takes precedence).

    Args:
        config: Base config from file
        **cli_options: CLI option overrides (None values are ignored)

    Returns:
        Config with CLI overrides applied
    """
    mappings = {
        "db": "db_path",
        "shared_dir": "shared_dir",
        "port": "syslog_port",
        "protocol": "syslog_protocol",
        "bind": "syslog_bind_address",
        "allow": "syslog_allowed_ips",
        "command_port": "command_port",
        "llm": "llm_enabled",
        "llm_model": "llm_model",
        "llm_required": "llm_required",
        "redirect_url": "redirect_url",
    }

    for cli_name, config_name in mappings.items():
        if cli_name in cli_options:
            value = cli_options[cli_name]
            if value is not None and value != () and value != "":
                if cli_name == "allow" and isinstance(value, tuple):
                    value = list(value)
                if cli_name in ("db", "shared_dir"):
                    value = Path(value).expanduser()
                setattr(config, config_name, value)

    return config
