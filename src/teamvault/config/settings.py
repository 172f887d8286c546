"""
Configuration settings management for teamvault.

Settings come from a YAML file and are overridden by TEAMVAULT_*
environment variables before being validated.

Configuration is loaded from ~/.teamvault/config.yaml by default, with the
path overridable via the TEAMVAULT_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".teamvault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

DUPLICATE_POLICIES = ("warn", "reject")


@dataclass
class DeploymentConfig:
    """Connection settings for one hosted deployment (table + storage API)."""

    url: str = ""
    timeout: float = 30.0


@dataclass
class BackupConfig:
    """
    Export and import settings.

    Attributes:
        max_workers: Upper bound on concurrent store calls during fan-out.
        activity_log_limit: Most-recent activity log entries kept on export.
        duplicate_names: What to do when two stages/tasks/folders share a
            name: "warn" (first one wins on import) or "reject".
        import_name_suffix: Appended to the project name on import.
        include_report: Embed the evidence report in exported archives.
        page_size: Rows fetched per request when paginating.
    """

    max_workers: int = 8
    activity_log_limit: int = 500
    duplicate_names: str = "warn"
    import_name_suffix: str = " (Copy)"
    include_report: bool = True
    page_size: int = 1000


@dataclass
class ReportingConfig:
    """Evidence report settings."""

    organization: str = ""
    activity_log_limit: int = 150
    footer_text: str = "Generated by teamvault"


@dataclass
class Settings:
    """
    Complete teamvault configuration settings.

    Loaded from a YAML file; any field listed in _apply_environment_overrides
    can also be set through a TEAMVAULT_* variable.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        actor_id: Default importing actor (destination user id).
        deployments: Named deployments that can be exported from or
            imported into.
        backup: Export/import behaviour.
        reporting: Evidence report generation settings.
    """

    log_level: str = "INFO"
    actor_id: str = ""
    deployments: dict[str, DeploymentConfig] = field(default_factory=dict)
    backup: BackupConfig = field(default_factory=BackupConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)

    def get_deployment(self, name: str) -> DeploymentConfig:
        """
        Look up a deployment by name.

        Raises:
            ConfigurationError: If no deployment with that name is configured.
        """
        deployment = self.deployments.get(name)
        if deployment is None:
            available = ", ".join(sorted(self.deployments)) or "none"
            raise ConfigurationError(
                f"Unknown deployment: {name}. Configured: {available}"
            )
        return deployment


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from TEAMVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.teamvault/config.yaml).
    """
    env_path = os.environ.get("TEAMVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    A missing file yields defaults. Environment overrides are applied after
    the file, then the result is validated.

    Args:
        config_path: Config file to read. Defaults to TEAMVAULT_CONFIG or
                    ~/.teamvault/config.yaml.

    Returns:
        Settings that passed validation.

    Raises:
        ConfigurationError: If the file cannot be read or parsed, or a
                          value is out of range.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("teamvault", {}) or {}

    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()
    if "actor_id" in general:
        settings.actor_id = str(general["actor_id"] or "")

    deployments = data.get("deployments", {}) or {}
    for name, values in deployments.items():
        values = values or {}
        settings.deployments[str(name)] = DeploymentConfig(
            url=str(values.get("url", "")),
            timeout=float(values.get("timeout", 30.0)),
        )

    backup = data.get("backup", {}) or {}
    if "max_workers" in backup:
        settings.backup.max_workers = int(backup["max_workers"])
    if "activity_log_limit" in backup:
        settings.backup.activity_log_limit = int(backup["activity_log_limit"])
    if "duplicate_names" in backup:
        settings.backup.duplicate_names = str(backup["duplicate_names"]).lower()
    if "import_name_suffix" in backup:
        settings.backup.import_name_suffix = str(backup["import_name_suffix"] or "")
    if "include_report" in backup:
        settings.backup.include_report = bool(backup["include_report"])
    if "page_size" in backup:
        settings.backup.page_size = int(backup["page_size"])

    reporting = data.get("reporting", {}) or {}
    if "organization" in reporting:
        settings.reporting.organization = str(reporting["organization"] or "")
    if "activity_log_limit" in reporting:
        settings.reporting.activity_log_limit = int(reporting["activity_log_limit"])
    if "footer_text" in reporting:
        settings.reporting.footer_text = str(reporting["footer_text"])

    return settings


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "TEAMVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "TEAMVAULT_ACTOR_ID": ("actor_id", str),
        "TEAMVAULT_MAX_WORKERS": ("backup.max_workers", int),
        "TEAMVAULT_ACTIVITY_LOG_LIMIT": ("backup.activity_log_limit", int),
        "TEAMVAULT_DUPLICATE_NAMES": ("backup.duplicate_names", lambda x: x.lower()),
        "TEAMVAULT_INCLUDE_REPORT": ("backup.include_report", _parse_bool),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {e}") from e

    # A one-off deployment can be described entirely from the environment
    env_url = os.environ.get("TEAMVAULT_URL")
    if env_url:
        name = os.environ.get("TEAMVAULT_DEPLOYMENT", "default")
        deployment = settings.deployments.setdefault(name, DeploymentConfig())
        deployment.url = env_url

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.backup.max_workers < 1:
        raise ConfigurationError("max_workers must be at least 1")

    if settings.backup.activity_log_limit < 0:
        raise ConfigurationError("backup.activity_log_limit cannot be negative")

    if settings.reporting.activity_log_limit < 0:
        raise ConfigurationError("reporting.activity_log_limit cannot be negative")

    if settings.backup.page_size < 1:
        raise ConfigurationError("page_size must be at least 1")

    if settings.backup.duplicate_names not in DUPLICATE_POLICIES:
        raise ConfigurationError(
            f"Invalid duplicate_names policy: {settings.backup.duplicate_names}. "
            f"Must be one of: {', '.join(DUPLICATE_POLICIES)}"
        )

    for name, deployment in settings.deployments.items():
        if deployment.url and not deployment.url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"Deployment '{name}' url must start with http:// or https://"
            )
        if deployment.timeout <= 0:
            raise ConfigurationError(f"Deployment '{name}' timeout must be positive")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "teamvault": {
            "log_level": settings.log_level,
            "actor_id": settings.actor_id,
        },
        "deployments": {
            name: {"url": deployment.url, "timeout": deployment.timeout}
            for name, deployment in settings.deployments.items()
        },
        "backup": {
            "max_workers": settings.backup.max_workers,
            "activity_log_limit": settings.backup.activity_log_limit,
            "duplicate_names": settings.backup.duplicate_names,
            "import_name_suffix": settings.backup.import_name_suffix,
            "include_report": settings.backup.include_report,
            "page_size": settings.backup.page_size,
        },
        "reporting": {
            "organization": settings.reporting.organization,
            "activity_log_limit": settings.reporting.activity_log_limit,
            "footer_text": settings.reporting.footer_text,
        },
    }
