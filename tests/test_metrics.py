from __future__ import annotations

from datetime import UTC, datetime, timedelta

from app.lifecycle import DeploymentLifecycle
from app.metrics import _median, _percentile, build_deployment_metrics
from app.models import Deployment, DeploymentError, DeploymentStatus, StatusEntry
from app.repositories.deployments import InMemoryDeploymentsRepository

S = DeploymentStatus
T0 = datetime(2026, 3, 1, 10, 0, tzinfo=UTC)


def _entry(dep: str, status: DeploymentStatus, offset_ms: int, **kwargs) -> StatusEntry:
    return StatusEntry(deployment_id=dep, status=status, timestamp=T0 + timedelta(milliseconds=offset_ms), **kwargs)


def test_percentile_and_median_helpers():
    assert _median([]) == 0
    assert _median([5, 1, 3]) == 3
    assert _median([1, 2, 3, 4]) == 2
    assert _percentile([], 0.95) == 0
    assert _percentile([10, 20, 30], 0.95) == 30
    assert _percentile([1, 2, 3, 4], 0.5) == 2
    assert _percentile([7], 0.95) == 7


def test_build_metrics_from_histories():
    deployments = [
        Deployment("d1", "ERC20", "base", "alice", current_status=S.COMPLETED),
        Deployment("d2", "ERC20", "base", "alice", current_status=S.COMPLETED),
        Deployment("d3", "ASA", "voimain", "bob", current_status=S.FAILED),
        Deployment("d4", "ASA", "voimain", "bob", current_status=S.PENDING),
    ]
    histories = {
        "d1": [_entry("d1", S.QUEUED, 0), _entry("d1", S.SUBMITTED, 100), _entry("d1", S.COMPLETED, 1000)],
        "d2": [_entry("d2", S.QUEUED, 0), _entry("d2", S.SUBMITTED, 300), _entry("d2", S.COMPLETED, 3000)],
        "d3": [
            _entry("d3", S.QUEUED, 0),
            _entry("d3", S.FAILED, 10, metadata={"errorCategory": "NetworkError"}),
            _entry("d3", S.QUEUED, 20),
            _entry("d3", S.FAILED, 30),
        ],
        "d4": [_entry("d4", S.QUEUED, 0), _entry("d4", S.SUBMITTED, 5), _entry("d4", S.PENDING, 6)],
    }

    metrics = build_deployment_metrics(deployments=deployments, histories=histories)

    assert metrics["totalDeployments"] == 4
    assert metrics["successfulDeployments"] == 2
    assert metrics["failedDeployments"] == 1
    assert metrics["pendingDeployments"] == 1
    assert metrics["successRate"] == 50.0
    assert metrics["failureRate"] == 25.0
    assert metrics["averageDurationMs"] == 2000
    assert metrics["medianDurationMs"] == 2000
    assert metrics["fastestDurationMs"] == 1000
    assert metrics["slowestDurationMs"] == 3000
    assert metrics["p95DurationMs"] == 3000
    assert metrics["averageDurationByTransition"] == {"Queued->Submitted": 200, "Submitted->Completed": 1800}
    assert metrics["failuresByCategory"] == {"NetworkError": 1}
    assert metrics["retriedDeployments"] == 1
    assert metrics["deploymentsByNetwork"] == {"base": 2, "voimain": 2}
    assert metrics["deploymentsByTokenType"] == {"ERC20": 2, "ASA": 2}


def test_empty_metrics_are_zeroed():
    metrics = build_deployment_metrics(deployments=[], histories={})
    assert metrics["totalDeployments"] == 0
    assert metrics["successRate"] == 0.0
    assert metrics["averageDurationByTransition"] == {}


def test_lifecycle_metrics_default_to_last_day():
    lifecycle = DeploymentLifecycle(repository=InMemoryDeploymentsRepository())
    dep = lifecycle.create_deployment(token_type="ERC20", network="base", deployed_by="alice")
    for status in (S.SUBMITTED, S.PENDING, S.CONFIRMED, S.COMPLETED):
        lifecycle.update_status(dep, status)
    lifecycle.create_deployment(token_type="ASA", network="voimain", deployed_by="bob")

    metrics = lifecycle.get_deployment_metrics()
    assert metrics["totalDeployments"] == 2
    assert metrics["successfulDeployments"] == 1
    assert metrics["pendingDeployments"] == 1
    assert "periodStart" in metrics and "periodEnd" in metrics

    only_base = lifecycle.get_deployment_metrics(network="BASE")
    assert only_base["totalDeployments"] == 1

    old_window = lifecycle.get_deployment_metrics(to_date=datetime.now(UTC) - timedelta(days=2))
    assert old_window["totalDeployments"] == 0


def test_structured_failures_are_grouped_by_category():
    lifecycle = DeploymentLifecycle(repository=InMemoryDeploymentsRepository())
    funds = lifecycle.create_deployment(token_type="ERC20", network="base", deployed_by="alice")
    network = lifecycle.create_deployment(token_type="ERC20", network="base", deployed_by="alice")
    plain = lifecycle.create_deployment(token_type="ERC20", network="base", deployed_by="alice")

    assert lifecycle.mark_failed_with_error(funds, DeploymentError.insufficient_funds("10", "2")) is True
    assert lifecycle.mark_failed_with_error(network, DeploymentError.network_error("rpc unreachable")) is True
    assert lifecycle.mark_failed(plain, "boom") is True

    metrics = lifecycle.get_deployment_metrics()
    assert metrics["failedDeployments"] == 3
    assert metrics["failuresByCategory"] == {"InsufficientFunds": 1, "NetworkError": 1}
