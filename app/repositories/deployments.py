from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
from typing import Any

from app.db.postgres import PostgresTxRunner
from app.errors import DEPLOYMENT_DUPLICATE, ApiError
from app.models import (
    Deployment,
    DeploymentFilters,
    DeploymentStatus,
    StatusEntry,
    parse_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def compute_entry_hash(*, entry: StatusEntry, prev_hash: str) -> str:
    material = entry.hash_material()
    material["prevHash"] = prev_hash
    blob = json.dumps(material, sort_keys=True, ensure_ascii=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def _duplicate_error(deployment_id: str) -> ApiError:
    return ApiError.from_code(DEPLOYMENT_DUPLICATE, f"deployment already exists: {deployment_id}")


def _chain_entry(*, deployment: Deployment, entry: StatusEntry, last: StatusEntry | None) -> StatusEntry:
    """Stamp an entry for appending after ``last`` and fold it into ``deployment``."""
    item = entry.copy()
    item.deployment_id = deployment.deployment_id
    now = utcnow()
    if last is not None and now < last.timestamp:
        # history timestamps never go backwards, even across clock adjustments
        now = last.timestamp
    item.timestamp = now
    if last is not None:
        item.duration_from_previous_status_ms = int((now - last.timestamp).total_seconds() * 1000)
    item.prev_hash = last.entry_hash if last is not None else ""
    item.entry_hash = compute_entry_hash(entry=item, prev_hash=item.prev_hash)

    deployment.current_status = item.status
    deployment.updated_at = now
    if item.transaction_hash:
        deployment.transaction_hash = item.transaction_hash
    if item.error_message:
        deployment.error_message = item.error_message
    return item


class InMemoryDeploymentsRepository:
    def __init__(
        self,
        deployments: dict[str, Deployment] | None = None,
        history: dict[str, list[StatusEntry]] | None = None,
    ) -> None:
        self._deployments = deployments if deployments is not None else {}
        self._history = history if history is not None else {}
        self._lock = threading.RLock()

    def create(self, *, deployment: Deployment, initial_entry: StatusEntry | None = None) -> Deployment:
        with self._lock:
            if deployment.deployment_id in self._deployments:
                logger.warning("deployment_duplicate deployment_id=%s", deployment.deployment_id)
                raise _duplicate_error(deployment.deployment_id)
            stored = deployment.copy()
            entries: list[StatusEntry] = []
            if initial_entry is not None:
                entries.append(_chain_entry(deployment=stored, entry=initial_entry, last=None))
            self._deployments[stored.deployment_id] = stored
            self._history[stored.deployment_id] = entries
            return stored.copy()

    def update(self, *, deployment: Deployment) -> Deployment | None:
        with self._lock:
            existing = self._deployments.get(deployment.deployment_id)
            if existing is None:
                return None
            stored = deployment.copy()
            # status only moves through append_status_entry
            stored.current_status = existing.current_status
            stored.updated_at = utcnow()
            self._deployments[stored.deployment_id] = stored
            return stored.copy()

    def get(self, *, deployment_id: str) -> Deployment | None:
        with self._lock:
            row = self._deployments.get(deployment_id)
            return row.copy() if row is not None else None

    def _filtered(self, filters: DeploymentFilters) -> list[Deployment]:
        rows = [x for x in self._deployments.values() if filters.matches(x)]
        return sorted(rows, key=lambda x: x.created_at, reverse=True)

    def list(self, *, filters: DeploymentFilters, page: int, page_size: int) -> list[Deployment]:
        with self._lock:
            rows = self._filtered(filters)
            start = (max(1, page) - 1) * max(1, page_size)
            return [x.copy() for x in rows[start : start + max(1, page_size)]]

    def count(self, *, filters: DeploymentFilters) -> int:
        with self._lock:
            return len(self._filtered(filters))

    def append_status_entry(
        self,
        *,
        deployment_id: str,
        entry: StatusEntry,
        expected_status: DeploymentStatus | None = None,
    ) -> Deployment | None:
        """Append ``entry`` and move the deployment to its status in one step.

        Returns ``None`` without mutating anything when the deployment is
        missing or its current status differs from ``expected_status``.
        """
        with self._lock:
            stored = self._deployments.get(deployment_id)
            if stored is None:
                return None
            if expected_status is not None and stored.current_status != expected_status:
                return None
            entries = self._history.setdefault(deployment_id, [])
            updated = stored.copy()
            chained = _chain_entry(deployment=updated, entry=entry, last=entries[-1] if entries else None)
            entries.append(chained)
            self._deployments[deployment_id] = updated
            return updated.copy()

    def get_history(self, *, deployment_id: str) -> list[StatusEntry]:
        with self._lock:
            return [x.copy() for x in self._history.get(deployment_id, [])]


_DEPLOYMENT_COLUMNS = (
    "deployment_id, token_type, network, deployed_by, token_name, token_symbol, asset_identifier, "
    "transaction_hash, current_status, created_at, updated_at, error_message, correlation_id"
)


def _row_to_deployment(row: tuple[Any, ...]) -> Deployment:
    return Deployment(
        deployment_id=row[0],
        token_type=row[1],
        network=row[2],
        deployed_by=row[3],
        token_name=row[4],
        token_symbol=row[5],
        asset_identifier=row[6],
        transaction_hash=row[7],
        current_status=DeploymentStatus.parse(row[8]),
        created_at=parse_iso(row[9]) or utcnow(),
        updated_at=parse_iso(row[10]) or utcnow(),
        error_message=row[11],
        correlation_id=row[12],
    )


def _payload_to_entry(payload: dict[str, Any]) -> StatusEntry:
    return StatusEntry(
        entry_id=str(payload.get("id") or ""),
        deployment_id=str(payload.get("deploymentId") or ""),
        status=DeploymentStatus.parse(payload.get("status") or DeploymentStatus.QUEUED),
        timestamp=parse_iso(payload.get("timestamp")) or utcnow(),
        message=payload.get("message"),
        transaction_hash=payload.get("transactionHash"),
        confirmed_round=payload.get("confirmedRound"),
        error_message=payload.get("errorMessage"),
        reason_code=payload.get("reasonCode"),
        actor_address=payload.get("actorAddress"),
        duration_from_previous_status_ms=payload.get("durationFromPreviousStatusMs"),
        metadata=dict(payload.get("metadata") or {}),
        prev_hash=str(payload.get("prevHash") or ""),
        entry_hash=str(payload.get("entryHash") or ""),
    )


class PostgresDeploymentsRepository:
    """Deployment store over two tables; appends lock the deployment row for the whole transaction."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        deployments_table: str = "deployments",
        entries_table: str = "deployment_status_entries",
    ) -> None:
        self._tx_runner = tx_runner
        self._deployments_table = _validate_identifier(deployments_table)
        self._entries_table = _validate_identifier(entries_table)

    def ensure_schema(self) -> None:
        statements = [
            f"""
            CREATE TABLE IF NOT EXISTS {self._deployments_table} (
                deployment_id TEXT PRIMARY KEY,
                token_type TEXT NOT NULL,
                network TEXT NOT NULL,
                deployed_by TEXT NOT NULL,
                token_name TEXT,
                token_symbol TEXT,
                asset_identifier TEXT,
                transaction_hash TEXT,
                current_status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                error_message TEXT,
                correlation_id TEXT
            )
            """,
            f"""
            CREATE TABLE IF NOT EXISTS {self._entries_table} (
                entry_id TEXT PRIMARY KEY,
                deployment_id TEXT NOT NULL REFERENCES {self._deployments_table}(deployment_id),
                seq INTEGER NOT NULL,
                status TEXT NOT NULL,
                occurred_at TIMESTAMPTZ NOT NULL,
                entry_hash TEXT NOT NULL,
                payload JSONB NOT NULL,
                UNIQUE (deployment_id, seq)
            )
            """,
        ]

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for sql in statements:
                    cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    @staticmethod
    def _deployment_params(deployment: Deployment) -> tuple[Any, ...]:
        return (
            deployment.deployment_id,
            deployment.token_type,
            deployment.network,
            deployment.deployed_by,
            deployment.token_name,
            deployment.token_symbol,
            deployment.asset_identifier,
            deployment.transaction_hash,
            deployment.current_status.value,
            deployment.created_at,
            deployment.updated_at,
            deployment.error_message,
            deployment.correlation_id,
        )

    def _insert_entry(self, cur: Any, *, entry: StatusEntry, seq: int) -> None:
        cur.execute(
            f"""
            INSERT INTO {self._entries_table} (
                entry_id, deployment_id, seq, status, occurred_at, entry_hash, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            """,
            (
                entry.entry_id,
                entry.deployment_id,
                seq,
                entry.status.value,
                entry.timestamp,
                entry.entry_hash,
                json.dumps(entry.as_dict(), ensure_ascii=True, sort_keys=True),
            ),
        )

    def create(self, *, deployment: Deployment, initial_entry: StatusEntry | None = None) -> Deployment:
        stored = deployment.copy()
        entry = None
        if initial_entry is not None:
            entry = _chain_entry(deployment=stored, entry=initial_entry, last=None)
        sql = f"""
            INSERT INTO {self._deployments_table} ({_DEPLOYMENT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (deployment_id) DO NOTHING
            RETURNING deployment_id
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, self._deployment_params(stored))
                if cur.fetchone() is None:
                    return False
                if entry is not None:
                    self._insert_entry(cur, entry=entry, seq=1)
            return True

        if not self._tx_runner.run_in_tx(fn=_op):
            logger.warning("deployment_duplicate deployment_id=%s", stored.deployment_id)
            raise _duplicate_error(stored.deployment_id)
        return stored

    def update(self, *, deployment: Deployment) -> Deployment | None:
        stored = deployment.copy()
        stored.updated_at = utcnow()
        sql = f"""
            UPDATE {self._deployments_table}
            SET token_name = %s, token_symbol = %s, asset_identifier = %s, transaction_hash = %s,
                updated_at = %s, error_message = %s, correlation_id = %s
            WHERE deployment_id = %s
            RETURNING {_DEPLOYMENT_COLUMNS}
        """

        def _op(conn: Any) -> Deployment | None:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        stored.token_name,
                        stored.token_symbol,
                        stored.asset_identifier,
                        stored.transaction_hash,
                        stored.updated_at,
                        stored.error_message,
                        stored.correlation_id,
                        stored.deployment_id,
                    ),
                )
                row = cur.fetchone()
            return _row_to_deployment(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, deployment_id: str) -> Deployment | None:
        sql = f"""
            SELECT {_DEPLOYMENT_COLUMNS}
            FROM {self._deployments_table}
            WHERE deployment_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> Deployment | None:
            with conn.cursor() as cur:
                cur.execute(sql, (deployment_id,))
                row = cur.fetchone()
            return _row_to_deployment(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    @staticmethod
    def _where(filters: DeploymentFilters) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.deployed_by:
            clauses.append("lower(deployed_by) = lower(%s)")
            params.append(filters.deployed_by)
        if filters.network:
            clauses.append("lower(network) = lower(%s)")
            params.append(filters.network)
        if filters.token_type:
            clauses.append("lower(token_type) = lower(%s)")
            params.append(filters.token_type)
        if filters.status is not None:
            clauses.append("current_status = %s")
            params.append(filters.status.value)
        if filters.from_date is not None:
            clauses.append("created_at >= %s")
            params.append(filters.from_date)
        if filters.to_date is not None:
            clauses.append("created_at <= %s")
            params.append(filters.to_date)
        if not clauses:
            return "", params
        return "WHERE " + " AND ".join(clauses), params

    def list(self, *, filters: DeploymentFilters, page: int, page_size: int) -> list[Deployment]:
        where, params = self._where(filters)
        size = max(1, page_size)
        offset = (max(1, page) - 1) * size
        sql = f"""
            SELECT {_DEPLOYMENT_COLUMNS}
            FROM {self._deployments_table}
            {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
        """

        def _op(conn: Any) -> list[Deployment]:
            with conn.cursor() as cur:
                cur.execute(sql, (*params, size, offset))
                rows = cur.fetchall() or []
            return [_row_to_deployment(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def count(self, *, filters: DeploymentFilters) -> int:
        where, params = self._where(filters)
        sql = f"SELECT COUNT(*) FROM {self._deployments_table} {where}"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            return int(row[0]) if row else 0

        return self._tx_runner.run_in_tx(fn=_op)

    def append_status_entry(
        self,
        *,
        deployment_id: str,
        entry: StatusEntry,
        expected_status: DeploymentStatus | None = None,
    ) -> Deployment | None:
        lock_sql = f"""
            SELECT {_DEPLOYMENT_COLUMNS}
            FROM {self._deployments_table}
            WHERE deployment_id = %s
            FOR UPDATE
        """
        last_sql = f"""
            SELECT seq, payload
            FROM {self._entries_table}
            WHERE deployment_id = %s
            ORDER BY seq DESC
            LIMIT 1
        """
        update_sql = f"""
            UPDATE {self._deployments_table}
            SET current_status = %s, updated_at = %s, transaction_hash = %s, error_message = %s
            WHERE deployment_id = %s
        """

        def _op(conn: Any) -> Deployment | None:
            with conn.cursor() as cur:
                cur.execute(lock_sql, (deployment_id,))
                row = cur.fetchone()
                if row is None:
                    return None
                deployment = _row_to_deployment(row)
                if expected_status is not None and deployment.current_status != expected_status:
                    return None
                cur.execute(last_sql, (deployment_id,))
                last_row = cur.fetchone()
                last = None
                seq = 1
                if last_row is not None:
                    seq = int(last_row[0]) + 1
                    if isinstance(last_row[1], dict):
                        last = _payload_to_entry(last_row[1])
                chained = _chain_entry(deployment=deployment, entry=entry, last=last)
                self._insert_entry(cur, entry=chained, seq=seq)
                cur.execute(
                    update_sql,
                    (
                        deployment.current_status.value,
                        deployment.updated_at,
                        deployment.transaction_hash,
                        deployment.error_message,
                        deployment_id,
                    ),
                )
            return deployment

        return self._tx_runner.run_in_tx(fn=_op)

    def get_history(self, *, deployment_id: str) -> list[StatusEntry]:
        sql = f"""
            SELECT payload
            FROM {self._entries_table}
            WHERE deployment_id = %s
            ORDER BY seq ASC
        """

        def _op(conn: Any) -> list[StatusEntry]:
            with conn.cursor() as cur:
                cur.execute(sql, (deployment_id,))
                rows = cur.fetchall() or []
            return [_payload_to_entry(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(fn=_op)
