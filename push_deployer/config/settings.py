"""
Configuration for push-deployer.

All workload parameters, timeouts and resource limits live in one immutable
DeployerConfig value that is passed into the pipeline. Values come from a YAML
file, with environment variables taking precedence.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from push_deployer.exceptions import InputError

logger = logging.getLogger(__name__)


class WorkloadConfig(BaseModel):
    """The deployment target and where its source and images live."""

    model_config = ConfigDict(frozen=True)

    registry_url: str = Field("localhost:5000", description="Local registry host[:port]")
    name: str = Field("app", description="Deployment (and image repository) name")
    namespace: str = Field("default", description="Kubernetes namespace")
    container: Optional[str] = Field(
        None, description="Container to update; defaults to the deployment name"
    )
    source_repo_path: str = Field("/srv/app", description="Git working copy to build from")
    branch: str = Field("main", description="Only pushes to this branch deploy")
    remote: str = Field("origin", description="Git remote to fetch from")
    dockerfile: str = Field("Dockerfile", description="Dockerfile path relative to the repo")
    build_args: Dict[str, str] = Field(
        default_factory=lambda: {"NODE_OPTIONS": "--max-old-space-size=1024"},
        description="Docker build arguments",
    )
    latest_tag: str = Field("latest", description="Floating tag for the desired image")
    stable_tag: str = Field("last-stable", description="Floating tag for the last good image")

    @property
    def container_name(self) -> str:
        return self.container or self.name


class BuildConfig(BaseModel):
    """Resource ceiling applied to image builds."""

    model_config = ConfigDict(frozen=True)

    memory_limit: str = Field("1536m", description="Memory ceiling for build containers")
    cpu_shares: int = Field(1536, ge=2, description="Relative CPU weight (1024 = one core)")
    cpuset_cpus: Optional[str] = Field(None, description="Pin builds to these CPUs, e.g. '0,1'")
    pull: bool = Field(False, description="Always pull newer base images")

    @field_validator("memory_limit")
    @classmethod
    def validate_memory_limit(cls, value: str) -> str:
        if parse_memory(value) <= 0:
            raise ValueError(f"memory limit must be positive, got {value!r}")
        return value

    @property
    def memory_limit_bytes(self) -> int:
        return parse_memory(self.memory_limit)


class TimeoutConfig(BaseModel):
    """Upper bound, in seconds, for every external call."""

    model_config = ConfigDict(frozen=True)

    sync: float = Field(120, gt=0)
    build: float = Field(1800, gt=0)
    inspect: float = Field(30, gt=0)
    push: float = Field(600, gt=0)
    apply: float = Field(60, gt=0)
    rollout: float = Field(300, gt=0, description="Await-Health bound (5 minutes)")
    undo: float = Field(120, gt=0)
    prune: float = Field(120, gt=0)


class GatewayConfig(BaseModel):
    """Trigger gateway (webhook listener) settings."""

    model_config = ConfigDict(frozen=True)

    host: str = Field("127.0.0.1", description="Bind address")
    port: int = Field(9000, description="Bind port")
    webhook_path: str = Field("/webhook/git-update", description="Push webhook route")
    webhook_secret: Optional[SecretStr] = Field(None, description="Shared HMAC secret")
    concurrency_policy: Literal["queue", "reject"] = Field(
        "queue", description="What to do with a trigger while a run is in flight"
    )
    rate_limit: str = Field("30/minute", description="slowapi limit for the webhook route")
    rate_limit_enabled: bool = Field(True, description="Disable for tests or trusted networks")
    history_size: int = Field(100, ge=1, description="Run records kept in history")


class CleanupConfig(BaseModel):
    """Local image pruning after a successful deploy."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(True)
    revisions_to_keep: int = Field(3, ge=1, description="Local revision tags to keep")


class PathsConfig(BaseModel):
    """Filesystem locations owned by push-deployer."""

    model_config = ConfigDict(frozen=True)

    state_dir: str = Field("/var/lib/push-deployer", description="Locks and run history")
    log_dir: str = Field("/var/log/push-deployer", description="Log files")
    audit_log: str = Field("/var/log/push-deployer/audit.jsonl", description="Audit trail")

    def resolve_state_dir(self) -> Path:
        """State directory, falling back to the temp dir when not writable."""
        state_dir = Path(self.state_dir)
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            state_dir = Path(tempfile.gettempdir()) / "push-deployer"
            logger.warning(f"Cannot write to {self.state_dir}, using {state_dir}")
            state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir


class DeployerConfig(BaseModel):
    """Complete push-deployer configuration."""

    model_config = ConfigDict(frozen=True)

    workload: WorkloadConfig = Field(default_factory=WorkloadConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @classmethod
    def from_file(
        cls, path: str, environ: Optional[Mapping[str, str]] = None
    ) -> "DeployerConfig":
        """
        Load configuration from YAML and overlay environment variables.

        Args:
            path: YAML config file path
            environ: Environment mapping (defaults to os.environ)

        Raises:
            InputError: If the file is missing or the values are invalid
        """
        config_path = Path(path)
        if not config_path.exists():
            raise InputError(f"Configuration file not found: {path}")

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise InputError(f"Configuration file {path} is not valid YAML: {e}") from e

        if not isinstance(data, dict):
            raise InputError(f"Configuration file {path} must contain a mapping")

        return cls.from_dict(data, environ)

    @classmethod
    def from_dict(
        cls, data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None
    ) -> "DeployerConfig":
        """Build a config from plain data plus environment overrides."""
        merged = apply_env_overrides(data, os.environ if environ is None else environ)
        try:
            return cls.model_validate(merged)
        except ValidationError as e:
            raise InputError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DeployerConfig":
        """Defaults overlaid with environment variables only (no config file)."""
        return cls.from_dict({}, environ)

    def save(self, path: str) -> None:
        """Write the configuration as YAML (the webhook secret is never written)."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json", exclude={"gateway": {"webhook_secret"}})
        with open(config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def require_webhook_secret(self) -> str:
        """Return the webhook secret or raise InputError if it is not configured."""
        secret = self.gateway.webhook_secret
        if secret is None or not secret.get_secret_value():
            raise InputError(
                "Webhook secret is not configured (set WEBHOOK_SECRET or gateway.webhook_secret)"
            )
        return secret.get_secret_value()


# Environment variable -> (section, key). Unprefixed names are the legacy .env
# names; prefixed ones win when both are set.
ENV_OVERRIDES: Dict[str, tuple] = {
    "REGISTRY_URL": ("workload", "registry_url"),
    "APP_NAME": ("workload", "name"),
    "K8S_NAMESPACE": ("workload", "namespace"),
    "APP_REPO_PATH": ("workload", "source_repo_path"),
    "WEBHOOK_SECRET": ("gateway", "webhook_secret"),
    "PUSH_DEPLOYER_REGISTRY_URL": ("workload", "registry_url"),
    "PUSH_DEPLOYER_WORKLOAD": ("workload", "name"),
    "PUSH_DEPLOYER_NAMESPACE": ("workload", "namespace"),
    "PUSH_DEPLOYER_CONTAINER": ("workload", "container"),
    "PUSH_DEPLOYER_REPO_PATH": ("workload", "source_repo_path"),
    "PUSH_DEPLOYER_BRANCH": ("workload", "branch"),
    "PUSH_DEPLOYER_WEBHOOK_SECRET": ("gateway", "webhook_secret"),
    "PUSH_DEPLOYER_STATE_DIR": ("paths", "state_dir"),
    "PUSH_DEPLOYER_LOG_DIR": ("paths", "log_dir"),
}


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Return a copy of data with environment values applied on top."""
    merged: Dict[str, Any] = {
        section: dict(values) if isinstance(values, dict) else values
        for section, values in data.items()
    }
    # Prefixed names are listed after the legacy ones so they win
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            merged.setdefault(section, {})
            merged[section][key] = value
    return merged


_MEMORY_UNITS = {"b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_memory(value: str) -> int:
    """Parse a Docker-style memory size such as '1536m' or '2g' into bytes."""
    text = str(value).strip().lower()
    if not text:
        raise ValueError("empty memory size")
    unit = text[-1]
    if unit in _MEMORY_UNITS:
        number = text[:-1]
        multiplier = _MEMORY_UNITS[unit]
    else:
        number = text
        multiplier = 1
    try:
        return int(float(number) * multiplier)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"invalid memory size: {value!r}") from e


def generate_default_config(path: str) -> None:
    """Write a default configuration file."""
    DeployerConfig().save(path)
