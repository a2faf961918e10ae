"""Deploy gate: decide whether before_deploy and publishing run for an environment."""

from __future__ import annotations

from ci_release.schemas import ConditionSpec

from .models import GateDecision, RunEvent

NOT_A_TAG = "not a tag"
TOOLCHAIN_MISMATCH = "toolchain mismatch"


def evaluate_gate(condition: ConditionSpec, event: RunEvent) -> GateDecision:
    """Pure predicate over (condition, event); both checks must pass."""

    if condition.tags_only and not event.is_tag:
        return GateDecision.skipped(NOT_A_TAG)
    required = condition.required_toolchain_version
    if required is not None and event.toolchain_version != required:
        return GateDecision.skipped(TOOLCHAIN_MISMATCH)
    return GateDecision.opened()
