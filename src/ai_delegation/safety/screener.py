"""Heuristic risk screening for incoming task specs.

Flags are advisory: the caller decides whether to proceed, escalate to a
human overseer, or reject.
"""

from __future__ import annotations

from datetime import timedelta

from ai_delegation.clock import Clock, SystemClock, as_utc
from ai_delegation.delegation.models import AutonomyLevel, Task

MAX_PERMISSIONS = 10
HIGH_CONTEXT_SENSITIVITY = 0.8
LOW_VERIFIABILITY = 0.3
TIGHT_DEADLINE_MIN_COMPLEXITY = 7
MINUTES_PER_COMPLEXITY_POINT = 5


def screen_task(task: Task, clock: Clock | None = None) -> list[str]:
    """Return human-readable warnings for risky task characteristics.

    Args:
        task: Task to inspect
        clock: Time source for the deadline check (defaults to wall clock)

    Returns:
        Warning messages, empty when nothing looks suspicious
    """
    warnings: list[str] = []

    if len(task.permissions) > MAX_PERMISSIONS:
        warnings.append(
            f"excessive permissions requested ({len(task.permissions)} > {MAX_PERMISSIONS})"
        )

    if not task.reversible and task.autonomy is AutonomyLevel.OPEN_ENDED:
        warnings.append("irreversible task with open-ended autonomy: high risk")

    if (
        task.context_sensitivity > HIGH_CONTEXT_SENSITIVITY
        and task.verifiability < LOW_VERIFIABILITY
    ):
        warnings.append(
            "high context sensitivity with low verifiability: potential exfiltration vector"
        )

    if task.deadline is not None and task.complexity > TIGHT_DEADLINE_MIN_COMPLEXITY:
        now = (clock or SystemClock()).now()
        remaining = as_utc(task.deadline) - now
        required = timedelta(minutes=task.complexity * MINUTES_PER_COMPLEXITY_POINT)
        if remaining < required:
            warnings.append("deadline too tight for complexity: potential pressure tactic")

    return warnings
