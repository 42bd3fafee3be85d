"""Deployment Manager

Installs the edge runtime and the test module fleet on the target host from
the templated deployment manifest. Deployment is idempotent: asking for the
same manifest while every module is running returns the live handle.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from ..clock import Clock
from ..error_handling.error_manager import RetryConfig
from ..error_handling.exceptions import DeployError, DeployErrorKind
from .manifest import manifest_fingerprint, module_names, render_manifest
from .runtime import RuntimeBackend, write_manifest

logger = logging.getLogger(__name__)

RUNNING = "running"


@dataclass(frozen=True)
class DeploymentTarget:
    """Host the runtime is deployed to"""
    host: str
    architecture: str
    image_tag: str
    registry: str = ""


class RunHandle:
    """Live deployment of one manifest on one target"""

    def __init__(
        self,
        backend: RuntimeBackend,
        target: DeploymentTarget,
        manifest: Dict[str, Any],
        fingerprint: str
    ):
        self.backend = backend
        self.target = target
        self.manifest = manifest
        self.fingerprint = fingerprint
        self.modules: List[str] = module_names(manifest)
        self.torn_down = False

    async def module_status(self) -> Dict[str, str]:
        """Status of each module the manifest declares"""
        deployed = await self.backend.list_modules()
        return {name: deployed.get(name, "missing") for name in self.modules}

    async def is_alive(self) -> bool:
        """True while every declared module is running"""
        if self.torn_down:
            return False
        status = await self.module_status()
        return all(value == RUNNING for value in status.values())

    async def teardown(self) -> None:
        """Remove the deployed modules"""
        if self.torn_down:
            return
        logger.info(f"Tearing down deployment on {self.target.host}")
        await self.backend.teardown()
        self.torn_down = True


class DeploymentManager:
    """Deploys the connectivity test fleet through a runtime backend"""

    def __init__(
        self,
        backend: RuntimeBackend,
        work_dir: str = "work",
        clock: Optional[Clock] = None,
        retry_config: Optional[RetryConfig] = None
    ):
        """Initialize deployment manager

        Args:
            backend: Runtime backend that applies manifests
            work_dir: Directory rendered manifests are written to while applied
            clock: Time source for retry backoff
            retry_config: Retry policy for deployment timeouts
        """
        self.backend = backend
        self.work_dir = Path(work_dir)
        self.clock = clock or Clock()
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=5.0)
        self._handle: Optional[RunHandle] = None

    @property
    def handle(self) -> Optional[RunHandle]:
        return self._handle

    async def deploy(
        self,
        target: DeploymentTarget,
        manifest_template: str,
        params: Mapping[str, Any]
    ) -> RunHandle:
        """Deploy the runtime and modules described by the template

        Args:
            target: Host, architecture, and image set to deploy
            manifest_template: JSON manifest template text
            params: Placeholder values

        Returns:
            Handle to the live deployment

        Raises:
            DeployError: If the manifest is invalid or the deployment fails
        """
        manifest = render_manifest(manifest_template, params)
        fingerprint = manifest_fingerprint(
            manifest,
            {"host": target.host, "architecture": target.architecture, "image_tag": target.image_tag}
        )

        if self._handle is not None and self._handle.fingerprint == fingerprint:
            if await self._handle.is_alive():
                logger.info(f"Deployment {fingerprint[:12]} already running on {target.host}")
                return self._handle
            logger.info(f"Deployment {fingerprint[:12]} not fully running, re-applying")

        try:
            await self._apply_with_retry(target, manifest, fingerprint)
        except DeployError:
            await self._reset_target(target)
            raise

        self._handle = RunHandle(self.backend, target, manifest, fingerprint)
        logger.info(
            f"Deployed {len(self._handle.modules)} modules to {target.host} "
            f"({target.architecture}, images {target.image_tag})"
        )
        return self._handle

    async def _apply_with_retry(self, target: DeploymentTarget, manifest: Dict[str, Any], fingerprint: str) -> None:
        """Apply a manifest, retrying only deployment timeouts"""
        manifest_path = self.work_dir / f"deployment.{target.architecture}.{fingerprint[:12]}.json"
        write_manifest(manifest, manifest_path)

        try:
            for attempt in range(self.retry_config.max_attempts):
                try:
                    await self.backend.apply(manifest_path, manifest)
                    return
                except DeployError as e:
                    if e.kind != DeployErrorKind.TIMEOUT or attempt == self.retry_config.max_attempts - 1:
                        logger.error(f"Deployment to {target.host} failed: {e.kind.value}")
                        raise

                    delay = self.retry_config.delay_for(attempt)
                    logger.warning(
                        f"Deployment attempt {attempt + 1}/{self.retry_config.max_attempts} "
                        f"timed out. Retrying in {delay:.2f}s"
                    )
                    await self.clock.sleep(delay)
        finally:
            # The rendered manifest carries credentials.
            manifest_path.unlink(missing_ok=True)

    async def _reset_target(self, target: DeploymentTarget) -> None:
        """Remove whatever a failed apply left installed"""
        self._handle = None
        logger.info(f"Resetting {target.host} after a failed deployment")
        try:
            await self.backend.teardown()
        except Exception as e:
            logger.error(f"Failed to reset {target.host} after a failed deployment: {e}")

    async def teardown(self) -> None:
        """Tear down the current deployment, if any"""
        if self._handle is None:
            return
        await self._handle.teardown()
        self._handle = None
