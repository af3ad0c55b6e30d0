from __future__ import annotations

import math
from collections import Counter
from collections.abc import Mapping, Sequence
from typing import Any

from app.models import Deployment, DeploymentStatus, StatusEntry, utcnow

_TERMINAL = {DeploymentStatus.COMPLETED, DeploymentStatus.FAILED}


def _percentile(values: list[int], ratio: float) -> int:
    if not values:
        return 0
    if ratio <= 0:
        return min(values)
    if ratio >= 1:
        return max(values)
    ordered = sorted(values)
    rank = max(1, math.ceil(ratio * len(ordered)))
    return int(ordered[rank - 1])


def _median(values: list[int]) -> int:
    if not values:
        return 0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) // 2
    return ordered[mid]


def _elapsed_ms(start: StatusEntry, end: StatusEntry) -> int:
    return int((end.timestamp - start.timestamp).total_seconds() * 1000)


def _was_retried(history: Sequence[StatusEntry]) -> bool:
    seen_failure = False
    for entry in history:
        if entry.status == DeploymentStatus.FAILED:
            seen_failure = True
        elif entry.status == DeploymentStatus.QUEUED and seen_failure:
            return True
    return False


def build_deployment_metrics(
    *,
    deployments: Sequence[Deployment],
    histories: Mapping[str, Sequence[StatusEntry]],
) -> dict[str, Any]:
    """Aggregate outcome counts and timing statistics for a set of deployments.

    Durations only cover completed deployments with at least two history
    entries; they run from the first to the last entry.
    """
    total = len(deployments)
    successful = sum(1 for x in deployments if x.current_status == DeploymentStatus.COMPLETED)
    failed = sum(1 for x in deployments if x.current_status == DeploymentStatus.FAILED)
    pending = sum(1 for x in deployments if x.current_status not in _TERMINAL)

    durations: list[int] = []
    per_transition: dict[str, list[int]] = {}
    failures_by_category: Counter[str] = Counter()
    retried = 0

    for deployment in deployments:
        history = list(histories.get(deployment.deployment_id, []))
        if _was_retried(history):
            retried += 1
        if deployment.current_status == DeploymentStatus.COMPLETED and len(history) >= 2:
            durations.append(_elapsed_ms(history[0], history[-1]))
            for prev, curr in zip(history, history[1:]):
                key = f"{prev.status.value}->{curr.status.value}"
                per_transition.setdefault(key, []).append(_elapsed_ms(prev, curr))
        if deployment.current_status == DeploymentStatus.FAILED:
            failure = next((x for x in history if x.status == DeploymentStatus.FAILED), None)
            if failure is not None and "errorCategory" in failure.metadata:
                failures_by_category[str(failure.metadata["errorCategory"] or "Unknown")] += 1

    return {
        "totalDeployments": total,
        "successfulDeployments": successful,
        "failedDeployments": failed,
        "pendingDeployments": pending,
        "successRate": (successful / total * 100.0) if total else 0.0,
        "failureRate": (failed / total * 100.0) if total else 0.0,
        "averageDurationMs": int(sum(durations) / len(durations)) if durations else 0,
        "medianDurationMs": _median(durations),
        "p95DurationMs": _percentile(durations, 0.95),
        "fastestDurationMs": min(durations) if durations else 0,
        "slowestDurationMs": max(durations) if durations else 0,
        "averageDurationByTransition": {k: int(sum(v) / len(v)) for k, v in per_transition.items()},
        "failuresByCategory": dict(failures_by_category),
        "retriedDeployments": retried,
        "deploymentsByNetwork": dict(Counter(x.network for x in deployments)),
        "deploymentsByTokenType": dict(Counter(x.token_type for x in deployments)),
        "calculatedAt": utcnow().isoformat(),
    }
