"""Configuration package for push-deployer."""

from push_deployer.config.settings import (
    BuildConfig,
    CleanupConfig,
    DeployerConfig,
    GatewayConfig,
    PathsConfig,
    TimeoutConfig,
    WorkloadConfig,
)

__all__ = [
    "BuildConfig",
    "CleanupConfig",
    "DeployerConfig",
    "GatewayConfig",
    "PathsConfig",
    "TimeoutConfig",
    "WorkloadConfig",
]
