"""Detection rules: the thresholds and workflow shape the analyzer checks against."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from flowwatch.config import Settings


@dataclass(frozen=True)
class DetectionRules:
    """Plain value object so detectors never read global configuration."""
    loop_threshold: int = 3
    phase_timeout_seconds: float = 240.0
    phase_timeouts: dict[str, float] = field(default_factory=dict)
    silence_seconds: float = 90.0
    abrupt_stop_seconds: float = 150.0
    agent_silence_seconds: float = 50.0
    agent_abandon_seconds: float = 90.0
    milestone_interval_seconds: float = 180.0
    velocity_factor: float = 2.0
    command_chain: tuple[str, ...] = ("ideate", "plan", "build", "ship")
    chain_prerequisites: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: {"build": ("plan", "ideate"), "ship": ("build",)}
    )
    phase_order: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: {"build": ("red", "green", "refactor")}
    )
    expected_milestones: dict[str, int] = field(
        default_factory=lambda: {"red": 1, "green": 1, "refactor": 0}
    )
    output_commands: tuple[str, ...] = ("ideate", "plan", "build")
    test_phase: str = "red"
    implementation_phase: str = "green"

    @classmethod
    def from_settings(cls, settings: "Settings") -> "DetectionRules":
        return cls(
            loop_threshold=settings.loop_threshold,
            phase_timeout_seconds=settings.phase_timeout_seconds,
            phase_timeouts={k.lower(): v for k, v in settings.phase_timeouts.items()},
            silence_seconds=settings.silence_seconds,
            abrupt_stop_seconds=settings.abrupt_stop_seconds,
            agent_silence_seconds=settings.agent_silence_seconds,
            agent_abandon_seconds=settings.agent_abandon_seconds,
            milestone_interval_seconds=settings.milestone_interval_seconds,
            velocity_factor=settings.velocity_factor,
            command_chain=tuple(settings.command_chain),
            chain_prerequisites={
                k: tuple(v) for k, v in settings.chain_prerequisites.items()
            },
            phase_order={
                k: tuple(p.lower() for p in v) for k, v in settings.phase_order.items()
            },
            expected_milestones={
                k.lower(): v for k, v in settings.expected_milestones.items()
            },
            output_commands=tuple(settings.output_commands),
            test_phase=settings.test_phase.lower(),
            implementation_phase=settings.implementation_phase.lower(),
        )

    def timeout_for(self, phase: Optional[str]) -> float:
        """Per-phase timeout, falling back to the default."""
        if phase:
            return self.phase_timeouts.get(phase.lower(), self.phase_timeout_seconds)
        return self.phase_timeout_seconds

    def chain_index(self, command: Optional[str]) -> int:
        if command in self.command_chain:
            return self.command_chain.index(command)
        return -1

    def phases_for(self, command: Optional[str]) -> tuple[str, ...]:
        return self.phase_order.get(command or "", ())
