"""Network Actuators

Apply network conditions to the target host. The traffic-control actuator
shapes one interface with `tc qdisc` (netem for loss and latency, tbf for
bandwidth); the restore path removes the root qdisc.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from ..error_handling.exceptions import FaultApplyError
from ..models import NetworkProfile

logger = logging.getLogger(__name__)


class NetworkActuator(ABC):
    """Applies network profiles to the target host"""

    @abstractmethod
    async def apply(self, profile: NetworkProfile) -> None:
        """Apply a network profile

        Raises:
            FaultApplyError: If the profile could not be applied
        """
        pass

    async def restore(self) -> None:
        """Remove every impairment"""
        await self.apply(NetworkProfile.ONLINE)


# qdisc arguments per impaired profile
TC_PROFILES: Dict[NetworkProfile, List[str]] = {
    NetworkProfile.OFFLINE: ["netem", "loss", "100%"],
    NetworkProfile.RESTRICT_BANDWIDTH: ["tbf", "rate", "256kbit", "burst", "32kbit", "latency", "400ms"],
    NetworkProfile.SATELLITE_LATENCY: ["netem", "delay", "600ms", "50ms", "loss", "1%"],
    NetworkProfile.CELLULAR_3G: ["netem", "delay", "200ms", "40ms", "rate", "780kbit", "loss", "0.5%"],
}


class TrafficControlActuator(NetworkActuator):
    """Shapes a host interface with Linux traffic control"""

    def __init__(
        self,
        interface: str = "eth0",
        command_prefix: Optional[Sequence[str]] = None,
        command_timeout: float = 30.0
    ):
        """Initialize actuator

        Args:
            interface: Network interface to shape
            command_prefix: Prepended to every command (e.g. ["sudo", "-n"] or ["ssh", "host"])
            command_timeout: Seconds before a tc invocation is abandoned
        """
        self.interface = interface
        self.command_prefix = list(command_prefix or [])
        self.command_timeout = command_timeout

    def build_command(self, profile: NetworkProfile) -> List[str]:
        """Command that puts the interface into the given profile"""
        if profile == NetworkProfile.ONLINE:
            return self.command_prefix + ["tc", "qdisc", "del", "dev", self.interface, "root"]
        return (
            self.command_prefix
            + ["tc", "qdisc", "replace", "dev", self.interface, "root"]
            + TC_PROFILES[profile]
        )

    async def apply(self, profile: NetworkProfile) -> None:
        command = self.build_command(profile)
        logger.info(f"Applying network profile {profile.value} on {self.interface}")
        returncode, stderr = await self._run(command)

        if returncode == 0:
            return

        # Deleting a root qdisc that is not there already means "online".
        if profile == NetworkProfile.ONLINE and (
            "No such file or directory" in stderr or "Cannot delete qdisc with handle of zero" in stderr
        ):
            logger.debug(f"No qdisc on {self.interface}, network already unrestricted")
            return

        raise FaultApplyError(
            f"tc exited with {returncode} applying {profile.value} on {self.interface}: {stderr.strip()}"
        )

    async def _run(self, command: List[str]):
        """Run a command, returning its exit code and stderr"""
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise FaultApplyError(f"Failed to start {command[0]}: {e}")

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise FaultApplyError(f"{' '.join(command)} timed out after {self.command_timeout}s")

        return process.returncode, stderr.decode(errors="replace")
