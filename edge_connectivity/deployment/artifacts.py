"""Build Artifact Selection

Locates the staged build artifacts for one architecture: the quickstart
bundle, the connectivity deployment template, and the build metadata that
decides the module image tag.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ..config.config_manager import ArchitectureProfile
from ..error_handling.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEPLOYMENT_TEMPLATE = "e2e_deployment_files/connectivity_deployment.template.json"
ARTIFACT_INFO = "artifactInfo.txt"


@dataclass(frozen=True)
class ArtifactSet:
    """Staged artifacts for one architecture"""
    root: Path
    quickstart_bundle: Path
    manifest_template: Path
    build_number: str
    image_label: str

    @property
    def image_tag(self) -> str:
        """Tag of the module images built alongside these artifacts"""
        return f"{self.build_number}-linux-{self.image_label}"

    def read_template(self) -> str:
        return self.manifest_template.read_text(encoding="utf-8")


def read_artifact_info(path: Path) -> Dict[str, str]:
    """Parse a key=value artifact metadata file"""
    info = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        key, separator, value = line.partition("=")
        if separator and key.strip():
            info[key.strip()] = value.strip()
    return info


def resolve_artifacts(
    artifacts_dir: str,
    images_artifact: str,
    profile: ArchitectureProfile,
    manifest_template: Optional[str] = None
) -> ArtifactSet:
    """Select the artifacts for an architecture profile

    Args:
        artifacts_dir: Directory the build artifacts were staged into
        images_artifact: Name of the images artifact (e.g. "core-linux")
        profile: Architecture profile naming the quickstart bundle
        manifest_template: Explicit template path overriding the staged one

    Raises:
        ConfigurationError: If a required artifact is missing
    """
    root = Path(artifacts_dir) / images_artifact
    bundle = root / profile.quickstart_bundle
    template = Path(manifest_template) if manifest_template else root / DEPLOYMENT_TEMPLATE
    info_path = root / ARTIFACT_INFO

    missing = [str(path) for path in (bundle, template, info_path) if not path.is_file()]
    if missing:
        raise ConfigurationError(f"Missing build artifacts: {', '.join(missing)}")

    build_number = read_artifact_info(info_path).get("BuildNumber")
    if not build_number:
        raise ConfigurationError(f"{info_path} does not declare a BuildNumber")

    artifacts = ArtifactSet(
        root=root,
        quickstart_bundle=bundle,
        manifest_template=template,
        build_number=build_number,
        image_label=profile.image_label
    )
    logger.info(f"Using artifacts from {root} (images {artifacts.image_tag})")
    return artifacts
