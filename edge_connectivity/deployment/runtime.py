"""Edge Runtime Backends

A runtime backend installs the edge runtime on the target host, applies a
deployment manifest, reports module liveness, and removes what it deployed.
The quickstart backend drives the runtime's quickstart tool shipped in the
images artifact.
"""

import asyncio
import json
import logging
import os
import stat
import tarfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from ..config.config_manager import RegistryConfig
from ..error_handling.exceptions import DeployError, DeployErrorKind

logger = logging.getLogger(__name__)

QUICKSTART_BINARY = "IotEdgeQuickstart"


class RuntimeBackend(ABC):
    """Installs the edge runtime and its modules on a host"""

    @abstractmethod
    async def apply(self, manifest_path: Path, manifest: Dict) -> None:
        """Install the runtime if needed and apply the manifest

        Modules are replaced by name, never duplicated.

        Raises:
            DeployError: If the runtime or its modules cannot be deployed
        """
        pass

    @abstractmethod
    async def list_modules(self) -> Dict[str, str]:
        """Module name to status (e.g. "running") for every deployed module"""
        pass

    @abstractmethod
    async def teardown(self) -> None:
        """Remove every deployed module"""
        pass


def classify_deploy_failure(output: str) -> DeployErrorKind:
    """Map quickstart failure output onto a deploy error kind"""
    text = output.lower()
    if "unauthorized" in text or "authentication required" in text:
        return DeployErrorKind.REGISTRY_AUTH_FAILED
    if (
        "pull access denied" in text
        or "manifest unknown" in text
        or "not found: manifest" in text
        or "failed to pull" in text
    ):
        return DeployErrorKind.IMAGE_PULL_FAILED
    if "timed out" in text or "timeout" in text:
        return DeployErrorKind.TIMEOUT
    return DeployErrorKind.MANIFEST_INVALID


def parse_module_list(output: str) -> Dict[str, str]:
    """Parse `iotedge list` output into module name to status"""
    modules = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] == "NAME":
            continue
        modules[parts[0]] = parts[1].lower()
    return modules


class QuickstartRuntime(RuntimeBackend):
    """Deploys through the IotEdgeQuickstart tool"""

    def __init__(
        self,
        bundle_path: Path,
        work_dir: Path,
        registry: RegistryConfig,
        iot_hub_connection_string: str,
        event_hub_connection_string: str,
        device_id: str,
        image_tag: str,
        edgelet_dir: Optional[Path] = None,
        runtime_log_level: str = "Info",
        timeout: float = 600.0,
        command_prefix: Optional[Sequence[str]] = None
    ):
        """Initialize quickstart runtime

        Args:
            bundle_path: Quickstart tarball for the host architecture
            work_dir: Directory the bundle is extracted into
            registry: Registry the module images come from
            iot_hub_connection_string: Hub the device is registered with
            event_hub_connection_string: Event hub the hub routes to
            device_id: Edge device id to register
            image_tag: Tag of the runtime and module images
            edgelet_dir: Directory holding the edgelet packages to install
            runtime_log_level: Log level of the runtime modules
            timeout: Seconds before a quickstart call is abandoned
            command_prefix: Prepended to host commands (e.g. ["sudo", "-n"])
        """
        self.bundle_path = Path(bundle_path)
        self.work_dir = Path(work_dir)
        self.registry = registry
        self.iot_hub_connection_string = iot_hub_connection_string
        self.event_hub_connection_string = event_hub_connection_string
        self.device_id = device_id
        self.image_tag = image_tag
        self.edgelet_dir = Path(edgelet_dir) if edgelet_dir else None
        self.runtime_log_level = runtime_log_level
        self.timeout = timeout
        self.command_prefix = list(command_prefix or [])
        self._binary: Optional[Path] = None

    async def apply(self, manifest_path: Path, manifest: Dict) -> None:
        binary = await self._ensure_extracted()
        command = [str(binary)] + self.quickstart_arguments(manifest_path)

        logger.info(f"Deploying edge runtime for device {self.device_id} with images {self.image_tag}")
        returncode, output = await self._run(command)
        if returncode != 0:
            kind = classify_deploy_failure(output)
            raise DeployError(kind, f"Quickstart exited with {returncode}: {output.strip()[-500:]}")

    def quickstart_arguments(self, manifest_path: Path) -> List[str]:
        arguments = [
            "--bootstrapper=IotEdged",
            "-c", self.iot_hub_connection_string,
            "-e", self.event_hub_connection_string,
            "-n", self.device_id,
            "-r", self.registry.address,
            "-u", self.registry.username,
            "-p", self.registry.password,
            "-t", self.image_tag,
            "--leave-running=All",
            "-l", str(manifest_path),
            "--runtime-log-level", self.runtime_log_level,
            "--no-verify",
        ]
        if self.edgelet_dir:
            arguments[1:1] = ["-a", str(self.edgelet_dir)]
        return arguments

    async def list_modules(self) -> Dict[str, str]:
        returncode, output = await self._run(self.command_prefix + ["iotedge", "list"])
        if returncode != 0:
            logger.warning(f"iotedge list exited with {returncode}")
            return {}
        return parse_module_list(output)

    async def teardown(self) -> None:
        modules = await self.list_modules()
        if not modules:
            logger.info("No modules to remove")
            return

        names = sorted(modules)
        returncode, output = await self._run(self.command_prefix + ["docker", "rm", "-f"] + names)
        if returncode != 0:
            logger.error(f"Failed to remove modules {names}: {output.strip()}")
        else:
            logger.info(f"Removed modules: {', '.join(names)}")

    async def _ensure_extracted(self) -> Path:
        """Extract the quickstart bundle once and locate the binary"""
        if self._binary is not None:
            return self._binary

        if not self.bundle_path.is_file():
            raise DeployError(DeployErrorKind.MANIFEST_INVALID, f"Quickstart bundle not found: {self.bundle_path}")

        target = self.work_dir / "quickstart"
        target.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(self._extract, self.bundle_path, target)

        for path in target.rglob(QUICKSTART_BINARY):
            if path.is_file():
                path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP)
                self._binary = path
                return path

        raise DeployError(DeployErrorKind.MANIFEST_INVALID, f"{QUICKSTART_BINARY} not found in {self.bundle_path}")

    @staticmethod
    def _extract(bundle: Path, target: Path) -> None:
        with tarfile.open(bundle, "r:gz") as archive:
            archive.extractall(target, filter="data")

    async def _run(self, command: List[str]) -> Tuple[int, str]:
        """Run a command, returning its exit code and combined output"""
        logger.debug(f"Running {command[0]}")
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=dict(os.environ)
            )
        except OSError as e:
            raise DeployError(DeployErrorKind.MANIFEST_INVALID, f"Failed to start {command[0]}: {e}")

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise DeployError(DeployErrorKind.TIMEOUT, f"{Path(command[0]).name} timed out after {self.timeout}s")

        return process.returncode, stdout.decode(errors="replace")


def write_manifest(manifest: Dict, path: Path) -> Path:
    """Write a rendered manifest where the runtime can read it"""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    os.chmod(path, 0o600)
    return path
