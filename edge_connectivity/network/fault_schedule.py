"""Fault Schedule

Ordered, strictly sequential network fault windows. Because windows never
overlap, the host is never connected and disconnected at the same time.
"""

from dataclasses import dataclass
from typing import Iterator, List, Tuple

from ..models import ControllerState, FaultMode, NetworkProfile
from ..timespan import parse_timespan


@dataclass(frozen=True)
class FaultWindow:
    """A network profile held for a duration in seconds"""
    profile: NetworkProfile
    duration: float

    @property
    def state(self) -> ControllerState:
        return self.profile.state


@dataclass(frozen=True)
class FaultSchedule:
    """Read-only sequence of fault windows for one TestRun"""
    windows: Tuple[FaultWindow, ...]
    mode: FaultMode = FaultMode.ALL

    @classmethod
    def from_frequencies(cls, frequencies: str, mode: FaultMode) -> "FaultSchedule":
        """Expand "<faultDuration> <onlineDuration> <runs>" triples

        Each triple produces `runs` pairs of (fault window, online window).
        Fault windows cycle through the profiles the mode allows.

        Raises:
            ValueError: If the frequency string is malformed
        """
        tokens = frequencies.split()
        if not tokens or len(tokens) % 3 != 0:
            raise ValueError(
                f"expected '<faultDuration> <onlineDuration> <runs>' triples, got '{frequencies}'"
            )

        profiles = mode.fault_profiles
        windows: List[FaultWindow] = []
        fault_count = 0
        for index in range(0, len(tokens), 3):
            fault_duration = parse_timespan(tokens[index])
            online_duration = parse_timespan(tokens[index + 1])
            try:
                runs = int(tokens[index + 2])
            except ValueError:
                raise ValueError(f"run count must be an integer, got '{tokens[index + 2]}'")
            if runs < 0:
                raise ValueError(f"run count must be non-negative, got {runs}")

            for _ in range(runs):
                profile = profiles[fault_count % len(profiles)]
                fault_count += 1
                windows.append(FaultWindow(profile=profile, duration=fault_duration))
                windows.append(FaultWindow(profile=NetworkProfile.ONLINE, duration=online_duration))

        return cls(windows=tuple(windows), mode=mode)

    def validate(self) -> None:
        """Check every window against the mode

        Raises:
            ValueError: If a window is outside the mode or has no duration
        """
        allowed = self.mode.allowed_states
        for position, window in enumerate(self.windows):
            if window.state not in allowed:
                raise ValueError(
                    f"Fault window {position} uses {window.profile.value} which mode "
                    f"{self.mode.value} does not allow"
                )
            if window.duration <= 0:
                raise ValueError(f"Fault window {position} must have a positive duration")

    @property
    def total_duration(self) -> float:
        return sum(window.duration for window in self.windows)

    def __iter__(self) -> Iterator[FaultWindow]:
        return iter(self.windows)

    def __len__(self) -> int:
        return len(self.windows)
