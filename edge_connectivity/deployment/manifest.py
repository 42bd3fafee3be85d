"""Deployment Manifest Rendering

The deployment manifest ships as a JSON template with `<Name>` placeholders.
Rendering substitutes every placeholder from a typed parameter map and checks
that the result is a deployable edge manifest.
"""

import hashlib
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..config.config_manager import ConnectivityTestConfig, RunParameters
from ..error_handling.exceptions import DeployError, DeployErrorKind
from ..timespan import format_timespan

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"<([A-Za-z][A-Za-z0-9_.]*)>")

EDGE_AGENT = "$edgeAgent"
DESIRED_PROPERTIES = "properties.desired"


def find_placeholders(text: str) -> List[str]:
    """Placeholder names in order of first appearance"""
    seen = []
    for match in PLACEHOLDER_PATTERN.finditer(text):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        value = value.value
    # Values land inside JSON strings, so escape them the way JSON would.
    return json.dumps(str(value))[1:-1]


def render_manifest(template: str, params: Mapping[str, Any]) -> Dict[str, Any]:
    """Substitute placeholders and parse the manifest

    Args:
        template: JSON template text
        params: Placeholder name to value

    Returns:
        Parsed deployment manifest

    Raises:
        DeployError: MANIFEST_INVALID if placeholders are left over, the JSON
            is invalid, or the manifest declares no modules
    """
    def substitute(match):
        name = match.group(1)
        if name in params and params[name] is not None:
            return _format_value(params[name])
        return match.group(0)

    rendered = PLACEHOLDER_PATTERN.sub(substitute, template)

    leftover = find_placeholders(rendered)
    if leftover:
        raise DeployError(
            DeployErrorKind.MANIFEST_INVALID,
            f"Unresolved placeholders: {', '.join(leftover)}"
        )

    try:
        manifest = json.loads(rendered)
    except json.JSONDecodeError as e:
        raise DeployError(DeployErrorKind.MANIFEST_INVALID, f"Manifest is not valid JSON: {e}")

    if not module_names(manifest):
        raise DeployError(
            DeployErrorKind.MANIFEST_INVALID,
            f"Manifest declares no {EDGE_AGENT} modules"
        )

    return manifest


def module_names(manifest: Any) -> List[str]:
    """Custom module names declared by the $edgeAgent desired properties"""
    if not isinstance(manifest, dict):
        return []
    agent = (manifest.get("modulesContent") or {}).get(EDGE_AGENT) or {}
    desired = agent.get(DESIRED_PROPERTIES) or {}
    modules = desired.get("modules") or {}
    if not isinstance(modules, dict):
        return []
    return sorted(modules)


def manifest_fingerprint(manifest: Dict[str, Any], extra: Optional[Mapping[str, Any]] = None) -> str:
    """Stable digest of a rendered manifest and its deployment inputs"""
    document = {"manifest": manifest, "extra": dict(extra or {})}
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def manifest_parameters(
    config: ConnectivityTestConfig,
    params: RunParameters,
    image_tag: str,
    run_id: str,
    report_url: str = ""
) -> Dict[str, Any]:
    """Placeholder values for the connectivity deployment template

    report_url is where receiving modules post delivery reports; it falls
    back to the configured result coordinator url.
    """
    coordinator = config.result_coordinator
    metrics = config.metrics_collector
    network = config.network_controller

    return {
        "Architecture": params.profile.image_label,
        "CR.Address": config.registry.address,
        "CR.Username": config.registry.username,
        "CR.Password": config.registry.password,
        "Build.BuildNumber": image_tag,
        "TrackingId": run_id,
        "ReleaseLabel": config.release_label,
        "UpstreamProtocol": params.protocol,
        "TestDuration": format_timespan(params.test_duration),
        "TestStartDelay": format_timespan(params.test_start_delay),
        "LoadGen.MessageFrequency": format_timespan(params.load_message_frequency),
        "NetworkController.Frequencies": network.frequencies,
        "NetworkController.RunProfile": network.mode,
        "IoTHubConnectionString": config.deployment.iot_hub_connection_string,
        "EventHubConnectionString": config.deployment.event_hub_connection_string,
        "LogAnalyticsWorkspaceId": config.log_analytics.workspace_id,
        "LogAnalyticsSharedKey": config.log_analytics.shared_key,
        "TestResultCoordinator.VerificationDelay": format_timespan(params.verification_delay),
        "TestResultCoordinator.LogAnalyticsLogType": coordinator.log_type,
        "TestResultCoordinator.StorageAccountConnectionString": coordinator.storage_connection_string,
        "TestResultCoordinator.ReportUrl": report_url or coordinator.report_url,
        "MetricsCollector.MetricsEndpointsCSV": ",".join(metrics.endpoints),
        "MetricsCollector.ScrapeFrequencyInSecs": int(metrics.scrape_frequency_secs),
        "MetricsCollector.UploadTarget": metrics.upload_target,
        "MetricsCollector.HostPlatform": params.host_platform,
    }
