"""
Configuration management for tierhunt.

Loads tierhunt.yaml, applies environment overrides (optionally from a .env
file) and validates the result.

Resolution order for the config file: explicit path, $TIERHUNT_CONFIG, then
./tierhunt.yaml. A missing file is not an error: defaults plus environment
are enough for a CI run where credentials come from secrets.
"""

import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from tierhunt.errors import ConfigError
from tierhunt.provisioner import MIN_BOOT_VOLUME_GB, ProvisionSpec

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "tierhunt.yaml"
BILLING_BOUNDARY_SECONDS = 60
DEFAULT_REGION = "ap-singapore-1"

DEFAULT_PROFILES: Dict[str, Dict[str, Any]] = {
    "a1-flex": {
        "shape": "VM.Standard.A1.Flex",
        "display_name": "a1-flex-sg",
        "ocpus": 4,
        "memory_gb": 24,
    },
    "e2-micro": {
        "shape": "VM.Standard.E2.1.Micro",
        "display_name": "e2-micro-sg",
    },
}


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default, minimum, maximum, cast=int):
    """Numeric env override; out-of-range or unparsable values fall back to default."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a number, using default {default}")
        return default
    if not minimum <= value <= maximum:
        logger.warning(f"{name}={raw} outside {minimum}-{maximum}, using default {default}")
        return default
    return value


class ProfileConfig:
    """Configuration for a single resource profile."""

    def __init__(self, name: str, data: Dict[str, Any], default_zones: List[str]):
        self.name = name
        self.enabled = data.get("enabled", True)
        self.shape = data.get("shape", "")
        self.display_name = data.get("display_name", name)
        self.ocpus = data.get("ocpus")
        self.memory_gb = data.get("memory_gb")
        self.zones = list(data.get("zones") or default_zones)
        self.boot_volume_gb = int(data.get("boot_volume_gb", MIN_BOOT_VOLUME_GB))
        self.assign_public_ip = data.get("assign_public_ip", True)
        self.image_id = data.get("image_id")

    def validate(self) -> None:
        """Validate profile configuration."""
        if not self.shape:
            raise ConfigError(f"Profile {self.name}: missing 'shape'")
        if not self.zones:
            raise ConfigError(f"Profile {self.name}: no zones configured")
        if self.boot_volume_gb < MIN_BOOT_VOLUME_GB:
            raise ConfigError(
                f"Profile {self.name}: boot_volume_gb must be at least {MIN_BOOT_VOLUME_GB}"
            )
        if self.shape.endswith("Flex") and (not self.ocpus or not self.memory_gb):
            raise ConfigError(f"Profile {self.name}: flexible shapes need ocpus and memory_gb")

    def __repr__(self) -> str:
        return f"ProfileConfig(name={self.name}, shape={self.shape}, zones={len(self.zones)})"


class TierhuntConfig:
    """Complete orchestrator configuration."""

    def __init__(self, raw_config: Optional[Dict[str, Any]] = None, config_path: Optional[Path] = None):
        self.config_path = config_path
        self.raw_config = raw_config or {}
        raw = self.raw_config

        # Provider target
        self.region = os.environ.get("OCI_REGION") or raw.get("region", DEFAULT_REGION)
        self.tenancy_ocid = os.environ.get("OCI_TENANCY_OCID") or raw.get("tenancy_ocid", "")
        # Falls back to the tenancy root compartment
        self.compartment_id = (
            os.environ.get("OCI_COMPARTMENT_ID") or raw.get("compartment_id") or self.tenancy_ocid
        )
        self.subnet_id = os.environ.get("OCI_SUBNET_ID") or raw.get("subnet_id", "")
        self.image_id = os.environ.get("OCI_IMAGE_ID") or raw.get("image_id", "")
        self.ssh_key_file = raw.get("ssh_key_file")

        env_zones = os.environ.get("OCI_AD")
        if env_zones:
            self.zones = [z.strip() for z in env_zones.split(",") if z.strip()]
        else:
            self.zones = list(raw.get("zones", []))

        # Profiles
        profiles_data = raw.get("profiles") or DEFAULT_PROFILES
        self.profiles: Dict[str, ProfileConfig] = {
            name: ProfileConfig(name, data or {}, self.zones)
            for name, data in profiles_data.items()
        }

        # Budget
        budget = raw.get("budget", {})
        self.budget_seconds = _env_number(
            "TIERHUNT_TIMEOUT_SECONDS", budget.get("seconds", 55), 1, BILLING_BOUNDARY_SECONDS - 1, float
        )
        self.grace_seconds = float(budget.get("grace_seconds", 2))

        # Retry
        retry = raw.get("retry", {})
        self.retry_max_retries = _env_number(
            "TRANSIENT_ERROR_MAX_RETRIES", retry.get("max_retries", 3), 0, 10
        )
        self.retry_base_delay = _env_number(
            "TRANSIENT_ERROR_RETRY_DELAY", retry.get("base_delay", 5), 0, 60, float
        )
        self.retry_max_delay = float(retry.get("max_delay", 40))

        # Circuit breaker
        breaker = raw.get("circuit_breaker", {})
        self.breaker_failure_threshold = int(breaker.get("failure_threshold", 3))
        self.breaker_reset_hours = float(breaker.get("reset_hours", 24))
        self.breaker_max_records = int(breaker.get("max_records", 20))

        # State cache
        cache = raw.get("cache", {})
        env_cache_enabled = os.environ.get("CACHE_ENABLED")
        self.cache_enabled = (
            _env_bool(env_cache_enabled) if env_cache_enabled else cache.get("enabled", True)
        )
        self.cache_ttl_hours = _env_number("CACHE_TTL_HOURS", cache.get("ttl_hours", 24), 1, 168)
        self.high_contention_regions = cache.get("high_contention_regions")
        self.lock_timeout = float(cache.get("lock_timeout", 30))
        self.stale_lock_seconds = float(cache.get("stale_lock_seconds", 300))
        self.verify_existing = cache.get("verify_existing", False)

        # Adaptive scheduler
        scheduler = raw.get("scheduler", {})
        self.scheduler_enabled = scheduler.get("enabled", True)
        self.scheduler_window_size = int(scheduler.get("window_size", 5))
        self.scheduler_min_samples = int(scheduler.get("min_samples", 10))
        self.scheduler_max_entries = int(scheduler.get("max_entries", 50))

        # Provisioning command
        command = raw.get("command", {})
        self.command_executable = command.get("executable", "oci")
        self.command_timeout = float(command.get("timeout_seconds", 30))
        self.connection_timeout = int(command.get("connection_timeout", 5))
        self.read_timeout = int(command.get("read_timeout", 15))
        env_check_existing = os.environ.get("CHECK_EXISTING_INSTANCE")
        self.check_existing_instance = (
            _env_bool(env_check_existing) if env_check_existing
            else command.get("check_existing_instance", False)
        )
        self.limit_exceeded_checks = int(command.get("limit_exceeded_checks", 3))
        self.limit_exceeded_delay = float(command.get("limit_exceeded_delay", 5))

        # Image lookup when no image id is configured
        image = raw.get("image", {})
        self.image_lookup = image.get("lookup", True)
        self.operating_system = os.environ.get("OPERATING_SYSTEM") or image.get("operating_system", "Oracle Linux")
        self.os_version = str(os.environ.get("OS_VERSION") or image.get("os_version", "9"))

        # Notifications
        notifications = raw.get("notifications", {})
        self.notifications_enabled = notifications.get("enabled", True)
        self.telegram_token = os.environ.get("TELEGRAM_TOKEN") or notifications.get("telegram_token")
        self.telegram_user_id = os.environ.get("TELEGRAM_USER_ID") or notifications.get("telegram_user_id")
        self.notification_timeout = float(notifications.get("timeout", 10))

        # Logging
        self.logging = raw.get("logging", {})

        # State directory shared by all attempt processes
        self.state_dir = Path(raw.get("state_dir", ".cache/oci-state"))

    # ------------------------------------------------------------------
    # Accessors

    def get_profile(self, name: str) -> Optional[ProfileConfig]:
        """Get profile configuration by name."""
        return self.profiles.get(name)

    def get_enabled_profiles(self) -> List[ProfileConfig]:
        """Enabled profiles in configuration order."""
        return [p for p in self.profiles.values() if p.enabled]

    def get_state_file_path(self) -> Path:
        return self.state_dir / "instance-state.json"

    def get_metrics_file_path(self) -> Path:
        return self.state_dir / "metrics.jsonl"

    def get_log_file_path(self) -> Optional[Path]:
        """Log file path with date interpolation, or None when file logging is off."""
        log_output = self.logging.get("output", "logs/tierhunt-{date}.log")
        if not log_output:
            return None
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output)

    def get_log_level(self) -> str:
        """Get logging level."""
        return (os.environ.get("LOG_LEVEL") or self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    # ------------------------------------------------------------------
    # Component factories

    def build_spec(self, profile_name: str) -> ProvisionSpec:
        """
        ProvisionSpec for a profile.

        Raises:
            ConfigError: If the profile does not exist
        """
        profile = self.get_profile(profile_name)
        if profile is None:
            raise ConfigError(f"Unknown profile: {profile_name}")
        return ProvisionSpec(
            name=profile.name,
            shape=profile.shape,
            display_name=profile.display_name,
            zones=tuple(profile.zones),
            ocpus=profile.ocpus,
            memory_gb=profile.memory_gb,
            compartment_id=self.compartment_id,
            subnet_id=self.subnet_id,
            image_id=profile.image_id or self.image_id,
            assign_public_ip=profile.assign_public_ip,
            boot_volume_gb=profile.boot_volume_gb,
            ssh_key_file=self.ssh_key_file,
            operating_system=self.operating_system,
            os_version=self.os_version,
        )

    def build_store(self):
        from tierhunt.store import FileStore

        return FileStore(
            self.state_dir,
            lock_timeout=self.lock_timeout,
            stale_lock_seconds=self.stale_lock_seconds,
        )

    def build_breaker(self, store=None):
        from tierhunt.circuit_breaker import CircuitBreaker

        return CircuitBreaker(
            store or self.build_store(),
            failure_threshold=self.breaker_failure_threshold,
            reset_after=timedelta(hours=self.breaker_reset_hours),
            max_records=self.breaker_max_records,
        )

    def build_cache(self):
        from tierhunt.state_cache import HIGH_CONTENTION_REGIONS, StateCacheManager

        return StateCacheManager(
            self.get_state_file_path(),
            region=self.region,
            enabled=self.cache_enabled,
            ttl_hours=self.cache_ttl_hours,
            high_contention_regions=self.high_contention_regions or HIGH_CONTENTION_REGIONS,
            lock_timeout=self.lock_timeout,
            stale_lock_seconds=self.stale_lock_seconds,
        )

    def build_scheduler(self, store=None):
        from tierhunt.scheduler import AdaptiveScheduler

        return AdaptiveScheduler(
            store or self.build_store(),
            enabled=self.scheduler_enabled,
            window_size=self.scheduler_window_size,
            min_samples=self.scheduler_min_samples,
            max_entries=self.scheduler_max_entries,
            region=self.region,
        )

    def build_metrics(self):
        from tierhunt.metrics import MetricsRecorder

        return MetricsRecorder(
            self.get_metrics_file_path(),
            lock_timeout=self.lock_timeout,
            stale_lock_seconds=self.stale_lock_seconds,
        )

    def build_command(self):
        from tierhunt.provisioner import ProvisionCommand

        return ProvisionCommand(
            executable=self.command_executable,
            timeout_seconds=self.command_timeout,
            connection_timeout=self.connection_timeout,
            read_timeout=self.read_timeout,
            region=self.region,
        )

    def build_notifier(self):
        from tierhunt.notify import build_notifier

        return build_notifier(
            self.telegram_token,
            self.telegram_user_id,
            enabled=self.notifications_enabled,
            timeout=self.notification_timeout,
        )

    # ------------------------------------------------------------------

    def validate(self) -> None:
        """
        Validate entire configuration.

        Raises:
            ConfigError: On the first problem found
        """
        if not self.budget_seconds < BILLING_BOUNDARY_SECONDS:
            raise ConfigError(
                f"budget.seconds ({self.budget_seconds}) must stay below the "
                f"{BILLING_BOUNDARY_SECONDS}s billing boundary"
            )
        if self.budget_seconds + self.grace_seconds >= BILLING_BOUNDARY_SECONDS:
            raise ConfigError(
                f"budget.seconds + budget.grace_seconds must stay below {BILLING_BOUNDARY_SECONDS}s"
            )

        if self.connection_timeout >= self.read_timeout:
            raise ConfigError(
                f"command.connection_timeout ({self.connection_timeout}) must be below "
                f"command.read_timeout ({self.read_timeout})"
            )

        if not 1 <= self.cache_ttl_hours <= 168:
            raise ConfigError(f"cache.ttl_hours must be within 1-168, got {self.cache_ttl_hours}")

        if self.retry_max_delay < self.retry_base_delay:
            raise ConfigError("retry.max_delay must not be below retry.base_delay")

        if not 1 <= self.limit_exceeded_checks <= 10:
            raise ConfigError(
                f"command.limit_exceeded_checks must be within 1-10, got {self.limit_exceeded_checks}"
            )
        if self.limit_exceeded_delay < 0:
            raise ConfigError("command.limit_exceeded_delay must not be negative")

        if not self.get_enabled_profiles():
            raise ConfigError("At least one enabled profile is required")

        for name, profile in self.profiles.items():
            try:
                profile.validate()
            except ConfigError as e:
                raise ConfigError(f"Profile '{name}' validation failed: {e}")

    def validate_credentials(self) -> List[str]:
        """
        Names of provider settings that are still empty.

        Only a real run needs them; validate() does not require them so that
        state and schedule commands work without credentials.
        """
        has_image = self.image_lookup or self.image_id or all(p.image_id for p in self.profiles.values())
        missing = []
        for name, value in (
            ("compartment_id / OCI_COMPARTMENT_ID / OCI_TENANCY_OCID", self.compartment_id),
            ("subnet_id / OCI_SUBNET_ID", self.subnet_id),
            ("image_id / OCI_IMAGE_ID", has_image),
        ):
            if not value:
                missing.append(name)
        return missing

    def __repr__(self) -> str:
        return f"TierhuntConfig(region={self.region}, profiles={len(self.profiles)})"


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML configuration file."""
    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
    return config


def load_config(config_path: Optional[Path] = None, env_file: Optional[Path] = None) -> TierhuntConfig:
    """
    Load configuration from YAML file and environment.

    Args:
        config_path: Path to config file. Defaults to $TIERHUNT_CONFIG or ./tierhunt.yaml
        env_file: .env file to load before reading the environment. Defaults
            to the config's `env_file` key, then ./.env if present

    Returns:
        TierhuntConfig instance

    Raises:
        ConfigError: If an explicit config file is missing or invalid
    """
    explicit = config_path is not None or bool(os.environ.get("TIERHUNT_CONFIG"))
    if config_path is None:
        config_path = Path(os.environ.get("TIERHUNT_CONFIG") or DEFAULT_CONFIG_FILE)
    config_path = Path(config_path)

    raw: Dict[str, Any] = {}
    if config_path.exists():
        raw = _load_yaml(config_path)
    elif explicit:
        raise ConfigError(f"Configuration file not found: {config_path}")

    env_path = env_file or raw.get("env_file")
    if env_path:
        load_dotenv(Path(env_path))
    elif Path(".env").exists():
        load_dotenv(Path(".env"))

    return TierhuntConfig(raw, config_path if config_path.exists() else None)
