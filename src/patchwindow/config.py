"""Configuration management with validation.

Configuration is loaded once at process start and passed explicitly to the
components that need it. Invalid configurations fail at load time rather
than halfway through a run.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from urllib.parse import quote_plus

import yaml
from pydantic import ValidationError

from .models import GroupMapSpec

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_TASK_PATH = "\\Patching\\"

DEFAULT_HORIZON_HOURS = 24
MIN_HORIZON_HOURS = 1
MAX_HORIZON_HOURS = 168  # one week

DEFAULT_WINDOW_LENGTH_MINUTES = 45
MIN_WINDOW_LENGTH_MINUTES = 1
MAX_WINDOW_LENGTH_MINUTES = 1440

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30
DEFAULT_SCHEDULER_TIMEOUT_SECONDS = 60
MAX_TIMEOUT_SECONDS = 600

DEFAULT_LOG_SINK = "PatchUnmanage"
DEFAULT_LOCK_FILE = "/tmp/patchwindow.lock"

MAX_GROUP_MAP_FILE_SIZE_BYTES = 256 * 1024

ODBC_DRIVER = "ODBC Driver 18 for SQL Server"


def load_group_map(path: Path) -> GroupMapSpec:
    """Load and validate the description -> group lookup table.

    Raises:
        ConfigurationError: If the file is missing, too large, or invalid.
    """
    if not path.is_file():
        raise ConfigurationError(f"Group map file not found: {path}")

    size = path.stat().st_size
    if size > MAX_GROUP_MAP_FILE_SIZE_BYTES:
        raise ConfigurationError(
            f"Group map file {path} is {size} bytes, "
            f"exceeding limit of {MAX_GROUP_MAP_FILE_SIZE_BYTES}"
        )

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Group map {path} must be a mapping with a 'groups' list")

    try:
        group_map = GroupMapSpec.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Group map validation failed for {path}: {e}") from e

    logger.info(
        "Loaded group map",
        extra={"source": "LoadConfig", "path": str(path), "entries": len(group_map.groups)},
    )
    return group_map


def build_mssql_url(instance: str, database: str) -> str:
    """Build a SQLAlchemy URL for a SQL Server instance using integrated auth."""
    odbc = (
        f"DRIVER={{{ODBC_DRIVER}}};SERVER={instance};DATABASE={database};"
        "Trusted_Connection=yes;TrustServerCertificate=yes"
    )
    return f"mssql+pyodbc:///?odbc_connect={quote_plus(odbc)}"


def database_url_from_env() -> str:
    """Ledger URL from DATABASE_URL, else from DB_INSTANCE and DB_NAME ("" if unset)."""
    database_url = os.environ.get("DATABASE_URL", "")
    if database_url:
        return database_url
    instance = os.environ.get("DB_INSTANCE", "")
    database = os.environ.get("DB_NAME", "")
    if instance and database:
        return build_mssql_url(instance, database)
    return ""


@dataclass(frozen=True)
class Config:
    """Job configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    group_map: GroupMapSpec
    database_url: str
    orion_url: str
    directory_url: str

    # Scheduler
    task_path: str = DEFAULT_TASK_PATH

    # Timing
    horizon_hours: int = DEFAULT_HORIZON_HOURS
    window_length_minutes: int = DEFAULT_WINDOW_LENGTH_MINUTES
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    scheduler_timeout_seconds: int = DEFAULT_SCHEDULER_TIMEOUT_SECONDS

    # Credentials
    orion_username: str = ""
    orion_password: str = field(default="", repr=False)
    vcenter_username: str = ""
    vcenter_password: str = field(default="", repr=False)
    directory_token: str = field(default="", repr=False)
    verify_tls: bool = True

    # Process
    log_sink: str = DEFAULT_LOG_SINK
    lock_file: Path = field(default_factory=lambda: Path(DEFAULT_LOCK_FILE))

    # Behavior
    rollback_on_push_failure: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL (or DB_INSTANCE and DB_NAME) is required")

        if not self.orion_url:
            errors.append("ORION_URL is required")
        elif not self.orion_url.startswith(("http://", "https://")):
            errors.append(f"ORION_URL must be an http(s) URL: {self.orion_url}")

        if not self.directory_url:
            errors.append("DIRECTORY_URL is required")
        elif not self.directory_url.startswith(("http://", "https://")):
            errors.append(f"DIRECTORY_URL must be an http(s) URL: {self.directory_url}")

        if not self.task_path.startswith("\\") or not self.task_path.endswith("\\"):
            errors.append(f"TASK_PATH must start and end with a backslash: {self.task_path}")

        if not MIN_HORIZON_HOURS <= self.horizon_hours <= MAX_HORIZON_HOURS:
            errors.append(
                f"HORIZON_HOURS must be between {MIN_HORIZON_HOURS} and {MAX_HORIZON_HOURS}"
            )

        if not MIN_WINDOW_LENGTH_MINUTES <= self.window_length_minutes <= MAX_WINDOW_LENGTH_MINUTES:
            errors.append(
                f"WINDOW_LENGTH_MINUTES must be between {MIN_WINDOW_LENGTH_MINUTES} "
                f"and {MAX_WINDOW_LENGTH_MINUTES}"
            )

        for name, value in (
            ("REQUEST_TIMEOUT", self.request_timeout_seconds),
            ("SCHEDULER_TIMEOUT", self.scheduler_timeout_seconds),
        ):
            if not 1 <= value <= MAX_TIMEOUT_SECONDS:
                errors.append(f"{name} must be between 1 and {MAX_TIMEOUT_SECONDS} seconds")

        if not self.log_sink:
            errors.append("LOG_SINK must not be empty")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def horizon(self) -> timedelta:
        return timedelta(hours=self.horizon_hours)

    @property
    def window_length(self) -> timedelta:
        return timedelta(minutes=self.window_length_minutes)

    @classmethod
    def from_env(cls, database_url: str | None = None) -> Config:
        """Load configuration from environment variables.

        A non-empty ``database_url`` takes precedence over DATABASE_URL and
        DB_INSTANCE/DB_NAME.

        Environment Variables:
            GROUP_MAP_FILE: YAML file mapping task descriptions to machine groups
            TASK_PATH: Scheduler folder holding the patch tasks (default: \\Patching\\)
            HORIZON_HOURS: Look-ahead for upcoming tasks (default: 24)
            WINDOW_LENGTH_MINUTES: Unmanage window length (default: 45)
            DATABASE_URL: SQLAlchemy URL of the window ledger
            DB_INSTANCE, DB_NAME: SQL Server instance and database, used when
                DATABASE_URL is not set
            ORION_URL: Monitoring platform base URL (https://orion:17778)
            ORION_USERNAME, ORION_PASSWORD: Monitoring platform credentials
            VCENTER_USERNAME, VCENTER_PASSWORD: vCenter credentials
            DIRECTORY_URL: Membership directory API base URL
            DIRECTORY_TOKEN: Bearer token for the membership directory
            VERIFY_TLS: Verify TLS certificates (default: true)
            REQUEST_TIMEOUT: Timeout for HTTP calls in seconds (default: 30)
            SCHEDULER_TIMEOUT: Timeout for the scheduler query in seconds (default: 60)
            LOG_SINK: Name of the log sink (default: PatchUnmanage)
            LOCK_FILE: Single-instance lock file (default: /tmp/patchwindow.lock)
            ROLLBACK_ON_PUSH_FAILURE: Delete the ledger row when the unmanage
                call fails (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        group_map_file = os.environ.get("GROUP_MAP_FILE", "")
        if not group_map_file:
            raise ConfigurationError("GROUP_MAP_FILE is required")

        return cls(
            group_map=load_group_map(Path(group_map_file)),
            database_url=database_url or database_url_from_env(),
            orion_url=os.environ.get("ORION_URL", "").rstrip("/"),
            directory_url=os.environ.get("DIRECTORY_URL", "").rstrip("/"),
            task_path=os.environ.get("TASK_PATH", DEFAULT_TASK_PATH),
            horizon_hours=get_int("HORIZON_HOURS", DEFAULT_HORIZON_HOURS),
            window_length_minutes=get_int("WINDOW_LENGTH_MINUTES", DEFAULT_WINDOW_LENGTH_MINUTES),
            request_timeout_seconds=get_int("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            scheduler_timeout_seconds=get_int(
                "SCHEDULER_TIMEOUT", DEFAULT_SCHEDULER_TIMEOUT_SECONDS
            ),
            orion_username=os.environ.get("ORION_USERNAME", ""),
            orion_password=os.environ.get("ORION_PASSWORD", ""),
            vcenter_username=os.environ.get("VCENTER_USERNAME", ""),
            vcenter_password=os.environ.get("VCENTER_PASSWORD", ""),
            directory_token=os.environ.get("DIRECTORY_TOKEN", ""),
            verify_tls=get_bool("VERIFY_TLS", True),
            log_sink=os.environ.get("LOG_SINK", DEFAULT_LOG_SINK),
            lock_file=Path(os.environ.get("LOCK_FILE", DEFAULT_LOCK_FILE)),
            rollback_on_push_failure=get_bool("ROLLBACK_ON_PUSH_FAILURE", False),
        )
