"""ConfigManager — environment profiles and configuration template."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from conveyor.config import (
    DEFAULT_PARALLELISM,
    DEFAULT_PREPROD_RANK,
    DEFAULT_PROD_RANK,
    DEFAULT_TRUNK_BRANCHES,
    STATE_DIR_NAME,
)
from conveyor.deployment.gate import PromotionPolicy
from conveyor.errors import ConfigurationError

logger = logging.getLogger(__name__)

# All known configuration keys with defaults
_CONFIG_KEYS: dict[str, dict[str, Any]] = {
    "CONVEYOR_ENV": {"default": "development", "description": "Environment profile"},
    "CONVEYOR_LOG_LEVEL": {"default": "INFO", "description": "Logging level"},
    "CONVEYOR_TRUNK_BRANCHES": {
        "default": ",".join(DEFAULT_TRUNK_BRANCHES),
        "description": "Comma-separated branches that may reach production",
    },
    "CONVEYOR_PREPROD_RANK": {
        "default": str(DEFAULT_PREPROD_RANK),
        "description": "Highest rank a non-trunk branch may reach",
    },
    "CONVEYOR_PROD_RANK": {"default": str(DEFAULT_PROD_RANK), "description": "Production rank"},
    "CONVEYOR_PARALLELISM": {
        "default": str(DEFAULT_PARALLELISM),
        "description": "Concurrent stages per group",
    },
    "CONVEYOR_LEDGER_DB": {
        "default": f"{STATE_DIR_NAME}/ledger.db",
        "description": "Deployment ledger database path",
    },
    "CONVEYOR_DIAGNOSTICS_DIR": {
        "default": f"{STATE_DIR_NAME}/diagnostics",
        "description": "Per-run stage output directory",
    },
    "CONVEYOR_ARCHIVE_DIR": {
        "default": f"{STATE_DIR_NAME}/runs",
        "description": "Finished run archive directory",
    },
    "CONVEYOR_ENVIRONMENTS_FILE": {
        "default": "environments.json",
        "description": "Environment registry file",
    },
    "CONVEYOR_SECRETS_FILE": {
        "default": f"{STATE_DIR_NAME}/secrets.json",
        "description": "Encrypted secrets store",
    },
    "CONVEYOR_SECRETS_KEY": {"default": "", "description": "Secrets store key (secret)"},
    "CONVEYOR_IMAGE": {"default": "app", "description": "Artifact name for built images"},
    "CONVEYOR_BUILD_COMMAND": {"default": "", "description": "Command run by build stages"},
    "CONVEYOR_BUILD_OUTPUT": {
        "default": "",
        "description": "File the build command produces; its SHA-256 becomes the artifact digest",
    },
    "CONVEYOR_SCAN_COMMAND": {"default": "", "description": "Command run by scan stages"},
    "CONVEYOR_DEPLOY_COMMAND": {"default": "", "description": "Command run by deploy stages"},
    "SLACK_WEBHOOK": {"default": "", "description": "Slack webhook URL (secret)"},
}

_PROFILES: dict[str, dict[str, str]] = {
    "development": {
        "CONVEYOR_ENV": "development",
        "CONVEYOR_LOG_LEVEL": "DEBUG",
    },
    "production": {
        "CONVEYOR_ENV": "production",
        "CONVEYOR_LOG_LEVEL": "WARNING",
    },
    "testing": {
        "CONVEYOR_ENV": "testing",
        "CONVEYOR_LOG_LEVEL": "DEBUG",
        "CONVEYOR_LEDGER_DB": ":memory:",
        "CONVEYOR_DIAGNOSTICS_DIR": "",
        "CONVEYOR_ARCHIVE_DIR": "",
        "CONVEYOR_PARALLELISM": "2",
    },
}


class ConfigManager:
    """Manage Conveyor configuration across environments."""

    def generate_env_template(self, project_path: str | Path) -> Path:
        """Create .env.example with all config keys.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        env_path = root / ".env.example"

        lines = ["# Conveyor Configuration Template", "# Copy to .env and fill in values", ""]
        for key, info in _CONFIG_KEYS.items():
            lines.append(f"# {info['description']}")
            lines.append(f"{key}={info['default']}")
            lines.append("")

        env_path.write_text("\n".join(lines), encoding="utf-8")
        return env_path

    def load_config(self, project_path: str | Path) -> dict[str, str]:
        """Load merged config: defaults -> profile -> config.json -> .env -> env vars.

        Returns a flat dict of configuration values.
        """
        root = Path(project_path)
        config: dict[str, str] = {}

        # 1. Defaults
        for key, info in _CONFIG_KEYS.items():
            config[key] = str(info["default"])

        # 2. Profile overrides
        env_name = os.environ.get("CONVEYOR_ENV", config.get("CONVEYOR_ENV", "development"))
        profile = _PROFILES.get(env_name, {})
        config.update(profile)

        # 3. .conveyor/config.json
        config_json = root / STATE_DIR_NAME / "config.json"
        if config_json.is_file():
            try:
                data = json.loads(config_json.read_text(encoding="utf-8"))
                for k, v in data.items():
                    config[k] = str(v)
            except (json.JSONDecodeError, OSError, AttributeError):
                logger.debug("Could not read config.json", exc_info=True)

        # 4. .env file
        env_file = root / ".env"
        if env_file.is_file():
            try:
                for line in env_file.read_text(encoding="utf-8").splitlines():
                    line = line.strip()
                    if not line or line.startswith("#"):
                        continue
                    if "=" in line:
                        k, v = line.split("=", 1)
                        config[k.strip()] = v.strip()
            except OSError:
                logger.debug("Could not read .env", exc_info=True)

        # 5. Environment variables override all
        for key in _CONFIG_KEYS:
            env_val = os.environ.get(key)
            if env_val is not None:
                config[key] = env_val

        return config


def _int_value(config: dict[str, str], key: str, default: int) -> int:
    raw = config.get(key, "")
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc


def promotion_policy(config: dict[str, str]) -> PromotionPolicy:
    """Build the promotion policy described by *config*."""
    trunk = tuple(
        b.strip() for b in config.get("CONVEYOR_TRUNK_BRANCHES", "").split(",") if b.strip()
    )
    return PromotionPolicy(
        trunk_branches=trunk or DEFAULT_TRUNK_BRANCHES,
        preprod_rank=_int_value(config, "CONVEYOR_PREPROD_RANK", DEFAULT_PREPROD_RANK),
        prod_rank=_int_value(config, "CONVEYOR_PROD_RANK", DEFAULT_PROD_RANK),
    )


def parallelism(config: dict[str, str]) -> int:
    value = _int_value(config, "CONVEYOR_PARALLELISM", DEFAULT_PARALLELISM)
    if value < 1:
        raise ConfigurationError(f"CONVEYOR_PARALLELISM must be at least 1, got {value}")
    return value


def resolve_path(project_root: str | Path, value: str) -> Path | None:
    """Resolve a configured path against the project root.

    Empty values mean "disabled" and give None; ``:memory:`` is kept as is.
    """
    if not value:
        return None
    if value == ":memory:":
        return Path(value)
    path = Path(value)
    return path if path.is_absolute() else Path(project_root) / path
