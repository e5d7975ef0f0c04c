"""Global configuration: paths, constants, defaults."""

from pathlib import Path

# Per-project state directory (config.json, ledger, archives, diagnostics)
STATE_DIR_NAME = ".conveyor"

# Branches allowed to promote all the way to production
DEFAULT_TRUNK_BRANCHES = ("main", "master")

# Promotion ranks of the reference environment layout (dev < staging < prod)
DEFAULT_PREPROD_RANK = 1
DEFAULT_PROD_RANK = 2

# Readiness wait used by verify stages
VERIFY_ATTEMPTS = 15
VERIFY_DELAY_SECONDS = 5.0

# Everything else tolerates no transient failure unless configured
DEFAULT_ATTEMPTS = 1
DEFAULT_DELAY_SECONDS = 0.0
DEFAULT_MAX_DELAY_SECONDS = 300.0

DEFAULT_STAGE_TIMEOUT_SECONDS = 600.0
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_EXPECTED_STATUS = 200

# Upper bound on concurrently running stages inside one group
DEFAULT_PARALLELISM = 4

DEFAULT_DIAGNOSTICS_DIR = Path(STATE_DIR_NAME) / "diagnostics"
DEFAULT_ARCHIVE_DIR = Path(STATE_DIR_NAME) / "runs"
