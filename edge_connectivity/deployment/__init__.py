"""Deployment Package

Artifact selection, manifest rendering, and runtime backends used to put the
edge runtime and test modules on the target host.
"""

from .artifacts import ArtifactSet, resolve_artifacts, read_artifact_info
from .deployment_manager import DeploymentManager, DeploymentTarget, RunHandle
from .manifest import (
    render_manifest,
    manifest_fingerprint,
    manifest_parameters,
    module_names,
    find_placeholders
)
from .runtime import (
    RuntimeBackend,
    QuickstartRuntime,
    classify_deploy_failure,
    parse_module_list
)

__all__ = [
    "ArtifactSet",
    "resolve_artifacts",
    "read_artifact_info",
    "DeploymentManager",
    "DeploymentTarget",
    "RunHandle",
    "render_manifest",
    "manifest_fingerprint",
    "manifest_parameters",
    "module_names",
    "find_placeholders",
    "RuntimeBackend",
    "QuickstartRuntime",
    "classify_deploy_failure",
    "parse_module_list"
]
