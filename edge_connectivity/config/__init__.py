"""Configuration Package"""

from .config_manager import (
    ConfigManager,
    ConnectivityTestConfig,
    ArchitectureProfile,
    RegistryConfig,
    DeploymentConfig,
    LoadGenConfig,
    NetworkControllerConfig,
    MetricsCollectorConfig,
    LogAnalyticsConfig,
    ResultCoordinatorConfig,
    LoggingConfig,
    RunParameters,
    PARAMETER_MAPPINGS,
    build_fault_schedule,
    load_config,
    parse_parameter_args
)

__all__ = [
    "ConfigManager",
    "ConnectivityTestConfig",
    "ArchitectureProfile",
    "RegistryConfig",
    "DeploymentConfig",
    "LoadGenConfig",
    "NetworkControllerConfig",
    "MetricsCollectorConfig",
    "LogAnalyticsConfig",
    "ResultCoordinatorConfig",
    "LoggingConfig",
    "RunParameters",
    "PARAMETER_MAPPINGS",
    "build_fault_schedule",
    "load_config",
    "parse_parameter_args"
]
