"""Configuration Manager

Centralized configuration for the connectivity test orchestrator. Values are
layered defaults -> YAML file -> environment variables -> flat pipeline
parameters, then validated once so misnamed or malformed parameters are
rejected before anything is deployed.
"""

import os
import logging
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Dict, Any, Optional, List, Mapping
from urllib.parse import urlparse

import yaml

from ..error_handling.exceptions import ConfigurationError
from ..models import FaultMode, NetworkProfile, UploadTarget, UpstreamProtocol
from ..network.fault_schedule import FaultSchedule, FaultWindow
from ..timespan import parse_timespan

logger = logging.getLogger(__name__)


@dataclass
class ArchitectureProfile:
    """Per-architecture parameter variant"""
    load_message_frequency: Optional[float] = None  # seconds between messages
    test_start_delay: Optional[float] = None
    quickstart_bundle: str = "IotEdgeQuickstart.linux-x64.tar.gz"
    edgelet_artifact: str = "iotedged-ubuntu16.04-amd64"
    image_label: str = "amd64"


@dataclass
class RegistryConfig:
    """Container registry the module images are pulled from"""
    address: str = ""
    username: str = ""
    password: str = field(default="", repr=False)


@dataclass
class DeploymentConfig:
    """Configuration for the deployment manager"""
    artifacts_dir: str = "artifacts"
    images_artifact: str = "core-linux"
    manifest_template: Optional[str] = None
    device_id: Optional[str] = None
    iot_hub_connection_string: str = field(default="", repr=False)
    event_hub_connection_string: str = field(default="", repr=False)
    runtime_log_level: str = "Info"
    work_dir: str = "work"
    timeout: float = 600.0
    max_attempts: int = 3
    retry_base_delay: float = 5.0


@dataclass
class LoadGenConfig:
    """Configuration for the load generator driver"""
    module_name: str = "loadGen1"
    endpoint: str = "http://localhost:5001"
    message_frequency: float = 0.05  # seconds between messages
    request_timeout: float = 10.0
    probe_attempts: int = 3


@dataclass
class NetworkControllerConfig:
    """Configuration for the network fault controller"""
    frequencies: str = "00:05:00 00:05:00 1"
    mode: FaultMode = FaultMode.ALL
    schedule: List[Dict[str, Any]] = field(default_factory=list)
    interface: str = "eth0"
    command_prefix: List[str] = field(default_factory=lambda: ["sudo", "-n"])
    command_timeout: float = 30.0
    teardown_timeout: float = 60.0


@dataclass
class MetricsCollectorConfig:
    """Configuration for the metrics collector"""
    endpoints: List[str] = field(default_factory=list)
    scrape_frequency_secs: float = 300.0
    upload_target: UploadTarget = UploadTarget.AZURE_LOG_ANALYTICS
    host_platform: Optional[str] = None
    log_type: str = "edgeconnectivitymetrics"
    request_timeout: float = 10.0
    batch_size: int = 50
    max_upload_attempts: int = 4
    upload_base_delay: float = 2.0


@dataclass
class LogAnalyticsConfig:
    """Log analytics workspace receiving telemetry and verdicts"""
    workspace_id: str = ""
    shared_key: str = field(default="", repr=False)
    request_timeout: float = 30.0


@dataclass
class ResultCoordinatorConfig:
    """Configuration for the test result coordinator"""
    verification_delay: float = 900.0
    storage_connection_string: str = field(default="sqlite:///results/connectivity.db", repr=False)
    log_type: str = "connectivity"
    message_loss_tolerance: float = 0.01
    fault_window_grace_seconds: float = 5.0
    expected_modules: List[str] = field(default_factory=list)
    report_host: str = "0.0.0.0"
    report_port: int = 5001
    report_url: str = ""


@dataclass
class LoggingConfig:
    """Configuration for logging"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_enabled: bool = False
    file_path: str = "logs/connectivity_test.log"
    max_file_size: int = 10485760  # 10MB
    backup_count: int = 5


def _default_architectures() -> Dict[str, ArchitectureProfile]:
    return {
        "linux_amd64_moby": ArchitectureProfile(
            quickstart_bundle="IotEdgeQuickstart.linux-x64.tar.gz",
            edgelet_artifact="iotedged-ubuntu16.04-amd64",
            image_label="amd64"
        ),
        "linux_arm32v7_moby": ArchitectureProfile(
            load_message_frequency=0.5,
            quickstart_bundle="IotEdgeQuickstart.linux-arm.tar.gz",
            edgelet_artifact="iotedged-debian9-arm32v7",
            image_label="arm32v7"
        ),
    }


@dataclass
class ConnectivityTestConfig:
    """Main configuration class"""
    architecture: str = "linux_amd64_moby"
    release_label: str = "ct"
    build_number: str = ""
    edgelet_branch: str = ""
    images_branch: str = ""
    protocol: UpstreamProtocol = UpstreamProtocol.AMQP
    test_duration: float = 3600.0
    test_start_delay: float = 120.0

    architectures: Dict[str, ArchitectureProfile] = field(default_factory=_default_architectures)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    load_gen: LoadGenConfig = field(default_factory=LoadGenConfig)
    network_controller: NetworkControllerConfig = field(default_factory=NetworkControllerConfig)
    metrics_collector: MetricsCollectorConfig = field(default_factory=MetricsCollectorConfig)
    log_analytics: LogAnalyticsConfig = field(default_factory=LogAnalyticsConfig)
    result_coordinator: ResultCoordinatorConfig = field(default_factory=ResultCoordinatorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def resolve(self, architecture: Optional[str] = None) -> "RunParameters":
        """Resolve the per-architecture variants into run parameters

        Args:
            architecture: Architecture tag, defaults to the configured one

        Raises:
            ConfigurationError: If the architecture has no profile
        """
        tag = architecture or self.architecture
        profile = self.architectures.get(tag)
        if profile is None:
            raise ConfigurationError(
                f"Unknown architecture '{tag}', expected one of {sorted(self.architectures)}"
            )

        load_frequency = profile.load_message_frequency
        if load_frequency is None:
            load_frequency = self.load_gen.message_frequency

        start_delay = profile.test_start_delay
        if start_delay is None:
            start_delay = self.test_start_delay

        return RunParameters(
            architecture=tag,
            profile=profile,
            protocol=self.protocol,
            load_message_frequency=load_frequency,
            test_duration=self.test_duration,
            test_start_delay=start_delay,
            verification_delay=self.result_coordinator.verification_delay,
            host_platform=self.metrics_collector.host_platform or tag,
            fault_schedule=build_fault_schedule(self.network_controller)
        )


@dataclass(frozen=True)
class RunParameters:
    """Per-architecture values resolved once at orchestrator start"""
    architecture: str
    profile: ArchitectureProfile
    protocol: UpstreamProtocol
    load_message_frequency: float
    test_duration: float
    test_start_delay: float
    verification_delay: float
    host_platform: str
    fault_schedule: FaultSchedule


def build_fault_schedule(config: NetworkControllerConfig) -> FaultSchedule:
    """Build the fault schedule from explicit windows or frequency triples"""
    if config.schedule:
        windows = []
        for entry in config.schedule:
            try:
                profile = NetworkProfile(entry["profile"])
                duration = parse_timespan(entry["duration"])
            except (KeyError, ValueError) as e:
                raise ConfigurationError(f"Invalid fault schedule entry {entry!r}: {e}")
            windows.append(FaultWindow(profile=profile, duration=duration))
        schedule = FaultSchedule(windows=tuple(windows), mode=config.mode)
    else:
        try:
            schedule = FaultSchedule.from_frequencies(config.frequencies, config.mode)
        except ValueError as e:
            raise ConfigurationError(f"Invalid network controller frequencies: {e}")

    try:
        schedule.validate()
    except ValueError as e:
        raise ConfigurationError(str(e))
    return schedule


# Flat pipeline parameter names mapped onto configuration paths.
PARAMETER_MAPPINGS: Dict[str, List[str]] = {
    "release.label": ["release_label"],
    "test.buildNumber": ["build_number"],
    "edgelet.branchName": ["edgelet_branch"],
    "images.branchName": ["images_branch"],
    "edgelet.artifact.name": ["architectures", "{architecture}", "edgelet_artifact"],
    "images.artifact.name": ["deployment", "images_artifact"],
    "container.registry": ["registry", "address"],
    "container.registry.username": ["registry", "username"],
    "container.registry.password": ["registry", "password"],
    "iotHub.connectionString": ["deployment", "iot_hub_connection_string"],
    "eventHub.connectionString": ["deployment", "event_hub_connection_string"],
    "upstream.protocol": ["protocol"],
    "loadGen.message.frequency": ["load_gen", "message_frequency"],
    "loadGen.message.frequency.amd64": ["architectures", "linux_amd64_moby", "load_message_frequency"],
    "loadGen.message.frequency.arm32": ["architectures", "linux_arm32v7_moby", "load_message_frequency"],
    "testDuration": ["test_duration"],
    "testStartDelay": ["test_start_delay"],
    "testStartDelay.amd64": ["architectures", "linux_amd64_moby", "test_start_delay"],
    "testStartDelay.arm32": ["architectures", "linux_arm32v7_moby", "test_start_delay"],
    "networkController.frequencies": ["network_controller", "frequencies"],
    "networkController.mode": ["network_controller", "mode"],
    "logAnalyticsWorkspaceId": ["log_analytics", "workspace_id"],
    "logAnalyticsSharedKey": ["log_analytics", "shared_key"],
    "testResultCoordinator.logAnalyticsLogType": ["result_coordinator", "log_type"],
    "testResultCoordinator.verificationDelay": ["result_coordinator", "verification_delay"],
    "testResultCoordinator.storageAccountConnectionString": ["result_coordinator", "storage_connection_string"],
    "testResultCoordinator.reportPort": ["result_coordinator", "report_port"],
    "testResultCoordinator.reportUrl": ["result_coordinator", "report_url"],
    "metricsCollector.metricsEndpointsCSV": ["metrics_collector", "endpoints"],
    "metricsCollector.scrapeFrequencyInSecs": ["metrics_collector", "scrape_frequency_secs"],
    "metricsCollector.uploadTarget": ["metrics_collector", "upload_target"],
    "metricsCollector.hostPlatform": ["metrics_collector", "host_platform"],
}

# Environment variables; secret names follow the key vault secret names.
ENV_MAPPINGS: Dict[str, List[str]] = {
    "CT_ARCHITECTURE": ["architecture"],
    "CT_TEST_DURATION": ["test_duration"],
    "CT_TEST_START_DELAY": ["test_start_delay"],
    "CT_UPSTREAM_PROTOCOL": ["protocol"],
    "CT_LOG_LEVEL": ["logging", "level"],
    "EDGEBUILDS_AZURECR_IO_USERNAME": ["registry", "username"],
    "EDGEBUILDS_AZURECR_IO_PWD": ["registry", "password"],
    "EDGE_CONNECTIVITY_TEST_HUB_CONN_STRING": ["deployment", "iot_hub_connection_string"],
    "EDGE_CONNECTIVITY_EVENT_HUB_CONN_STRING": ["deployment", "event_hub_connection_string"],
    "KV_LOG_ANALYTIC_WORKSPACE_ID": ["log_analytics", "workspace_id"],
    "KV_LOG_ANALYTIC_SHARED_KEY": ["log_analytics", "shared_key"],
    "EDGE_CONNECTIVITY_STORAGE_ACCOUNT_CONN_STRING": ["result_coordinator", "storage_connection_string"],
}

_DURATION_FIELDS = {
    "test_duration", "test_start_delay", "verification_delay", "message_frequency",
    "load_message_frequency", "timeout", "teardown_timeout", "command_timeout",
    "scrape_frequency_secs", "fault_window_grace_seconds",
}

_INTEGER_FIELDS = {"report_port"}


class ConfigManager:
    """Manages connectivity test configuration from multiple sources"""

    def __init__(
        self,
        config_file: Optional[str] = None,
        parameters: Optional[Mapping[str, str]] = None
    ):
        """Initialize configuration manager

        Args:
            config_file: Path to YAML configuration file
            parameters: Flat pipeline parameters (e.g. "testDuration": "01:00:00")
        """
        self.config_file = config_file
        self.parameters = dict(parameters or {})
        self._config: Optional[ConnectivityTestConfig] = None

    def load(self) -> ConnectivityTestConfig:
        """Load configuration from file, environment, and parameters

        Returns:
            Validated configuration object

        Raises:
            ConfigurationError: If any value is missing or invalid
        """
        config_dict = self._get_default_config()

        if self.config_file:
            if not os.path.exists(self.config_file):
                raise ConfigurationError(f"Configuration file not found: {self.config_file}")
            try:
                with open(self.config_file, 'r') as f:
                    file_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Failed to parse config file {self.config_file}: {e}")
            if file_config:
                if not isinstance(file_config, dict):
                    raise ConfigurationError(f"Config file {self.config_file} must contain a mapping")
                config_dict = self._merge_configs(config_dict, file_config)
            logger.info(f"Loaded configuration from {self.config_file}")

        config_dict = self._apply_env_overrides(config_dict)
        config_dict = self._apply_parameters(config_dict, self.parameters)

        self._config = self._create_config_object(config_dict)
        self._validate_config(self._config)

        logger.info(
            f"Configuration loaded for architecture {self._config.architecture} "
            f"(protocol {self._config.protocol.value})"
        )
        return self._config

    def get_config(self) -> ConnectivityTestConfig:
        """Get the current configuration

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration as dictionary"""
        return self._dataclass_to_dict(ConnectivityTestConfig())

    def _dataclass_to_dict(self, obj) -> Any:
        """Convert dataclass to dictionary recursively"""
        if is_dataclass(obj):
            return {f.name: self._dataclass_to_dict(getattr(obj, f.name)) for f in fields(obj)}
        if isinstance(obj, dict):
            return {key: self._dataclass_to_dict(value) for key, value in obj.items()}
        if isinstance(obj, list):
            return list(obj)
        if isinstance(obj, Enum):
            return obj.value
        return obj

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides"""
        for env_var, config_path in ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(config, config_path, env_value)

        return config

    def _apply_parameters(self, config: Dict[str, Any], parameters: Mapping[str, str]) -> Dict[str, Any]:
        """Apply flat pipeline parameters, rejecting unknown names"""
        unknown = sorted(name for name in parameters if name not in PARAMETER_MAPPINGS)
        if unknown:
            raise ConfigurationError(f"Unknown parameters: {', '.join(unknown)}")

        architecture = parameters.get("metricsCollector.hostPlatform") or config.get("architecture")
        for name, value in parameters.items():
            path = [
                architecture if part == "{architecture}" else part
                for part in PARAMETER_MAPPINGS[name]
            ]
            if name == "metricsCollector.metricsEndpointsCSV":
                value = [item.strip() for item in str(value).split(",") if item.strip()]
            self._set_nested_value(config, path, value)

        if "metricsCollector.hostPlatform" in parameters:
            config["architecture"] = parameters["metricsCollector.hostPlatform"]

        return config

    def _set_nested_value(self, config: Dict[str, Any], path: List[str], value: Any):
        """Set a nested configuration value"""
        current = config
        for key in path[:-1]:
            if key not in current or current[key] is None:
                current[key] = {}
            current = current[key]
        current[path[-1]] = value

    def _convert_value(self, name: str, value: Any) -> Any:
        """Convert string values to the type a field expects"""
        if value is None:
            return None
        if name in _DURATION_FIELDS:
            return parse_timespan(value)
        if name in _INTEGER_FIELDS:
            return int(value)
        return value

    def _build_section(self, cls, values: Optional[Dict[str, Any]], section: str):
        """Create one configuration dataclass from a dictionary"""
        values = values or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"Unknown keys in '{section}': {', '.join(unknown)}")

        kwargs = {}
        for name, value in values.items():
            try:
                kwargs[name] = self._convert_value(name, value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for '{section}.{name}': {e}")
        return cls(**kwargs)

    def _create_config_object(self, config_dict: Dict[str, Any]) -> ConnectivityTestConfig:
        """Create configuration object from dictionary"""
        try:
            architectures = {
                tag: self._build_section(ArchitectureProfile, profile, f"architectures.{tag}")
                for tag, profile in (config_dict.get("architectures") or {}).items()
            }

            network_values = dict(config_dict.get("network_controller") or {})
            if "mode" in network_values:
                network_values["mode"] = FaultMode(network_values["mode"])

            metrics_values = dict(config_dict.get("metrics_collector") or {})
            if "upload_target" in metrics_values:
                metrics_values["upload_target"] = UploadTarget(metrics_values["upload_target"])
            if isinstance(metrics_values.get("endpoints"), str):
                metrics_values["endpoints"] = [
                    item.strip() for item in metrics_values["endpoints"].split(",") if item.strip()
                ]

            return ConnectivityTestConfig(
                architecture=str(config_dict.get("architecture", "linux_amd64_moby")),
                release_label=str(config_dict.get("release_label", "ct")),
                build_number=str(config_dict.get("build_number") or ""),
                edgelet_branch=str(config_dict.get("edgelet_branch") or ""),
                images_branch=str(config_dict.get("images_branch") or ""),
                protocol=UpstreamProtocol(config_dict.get("protocol", UpstreamProtocol.AMQP.value)),
                test_duration=parse_timespan(config_dict.get("test_duration", 3600)),
                test_start_delay=parse_timespan(config_dict.get("test_start_delay", 120)),
                architectures=architectures,
                registry=self._build_section(RegistryConfig, config_dict.get("registry"), "registry"),
                deployment=self._build_section(DeploymentConfig, config_dict.get("deployment"), "deployment"),
                load_gen=self._build_section(LoadGenConfig, config_dict.get("load_gen"), "load_gen"),
                network_controller=self._build_section(
                    NetworkControllerConfig, network_values, "network_controller"
                ),
                metrics_collector=self._build_section(
                    MetricsCollectorConfig, metrics_values, "metrics_collector"
                ),
                log_analytics=self._build_section(
                    LogAnalyticsConfig, config_dict.get("log_analytics"), "log_analytics"
                ),
                result_coordinator=self._build_section(
                    ResultCoordinatorConfig, config_dict.get("result_coordinator"), "result_coordinator"
                ),
                logging=self._build_section(LoggingConfig, config_dict.get("logging"), "logging"),
            )

        except ConfigurationError:
            raise
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to create config object: {e}")
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _validate_config(self, config: ConnectivityTestConfig):
        """Validate configuration values, collecting every error"""
        errors = []

        if config.architecture not in config.architectures:
            errors.append(f"No profile for architecture '{config.architecture}'")

        if config.test_duration <= 0:
            errors.append("Test duration must be positive")

        if config.result_coordinator.verification_delay < 0:
            errors.append("Verification delay must be non-negative")

        if not 0 <= config.result_coordinator.message_loss_tolerance < 1:
            errors.append("Message loss tolerance must be in [0, 1)")

        if not 0 <= config.result_coordinator.report_port <= 65535:
            errors.append("Report port must be in [0, 65535]")

        report_url = config.result_coordinator.report_url
        if report_url:
            parsed = urlparse(report_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"Invalid report url: {report_url}")

        for tag, profile in config.architectures.items():
            frequency = profile.load_message_frequency
            if frequency is not None and frequency <= 0:
                errors.append(f"Load message frequency for {tag} must be positive")

        if config.load_gen.message_frequency <= 0:
            errors.append("Load message frequency must be positive")

        if config.metrics_collector.scrape_frequency_secs < 1:
            errors.append("Metrics scrape frequency must be at least 1 second")

        if config.metrics_collector.max_upload_attempts < 1:
            errors.append("Metrics upload attempts must be at least 1")

        for endpoint in config.metrics_collector.endpoints:
            parsed = urlparse(endpoint)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(f"Invalid metrics endpoint: {endpoint}")

        if config.metrics_collector.upload_target == UploadTarget.AZURE_LOG_ANALYTICS and config.metrics_collector.endpoints:
            if not config.log_analytics.workspace_id or not config.log_analytics.shared_key:
                errors.append("Log analytics workspace id and shared key are required for AzureLogAnalytics uploads")

        if config.network_controller.teardown_timeout <= 0:
            errors.append("Network teardown timeout must be positive")

        if config.deployment.max_attempts < 1:
            errors.append("Deployment attempts must be at least 1")

        try:
            build_fault_schedule(config.network_controller)
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation errors: " + "; ".join(errors))

        logger.info("Configuration validation passed")


def load_config(
    config_file: Optional[str] = None,
    parameters: Optional[Mapping[str, str]] = None
) -> ConnectivityTestConfig:
    """Load configuration from file, environment, and pipeline parameters

    Args:
        config_file: Optional path to configuration file
        parameters: Optional flat pipeline parameters

    Returns:
        Loaded configuration object
    """
    return ConfigManager(config_file, parameters).load()


def parse_parameter_args(items: List[str]) -> Dict[str, str]:
    """Parse "name=value" command line arguments into a parameter mapping"""
    parameters = {}
    for item in items:
        name, separator, value = item.partition("=")
        if not separator or not name:
            raise ConfigurationError(f"Parameters must look like name=value, got '{item}'")
        parameters[name.strip()] = value
    return parameters
