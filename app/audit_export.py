from __future__ import annotations

import csv
import hashlib
import io
import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from app.errors import (
    AUDIT_EXPORT_TIMEOUT,
    DEPLOYMENT_NOT_FOUND,
    IDEMPOTENCY_CONFLICT,
    REQ_VALIDATION_FAILED,
    ApiError,
)
from app.keyed_locks import KeyedLocks
from app.models import AuditExportFormat, Deployment, DeploymentFilters, StatusEntry, iso_or_none, utcnow
from app.repositories.deployments import compute_entry_hash
from app.settings import CoreSettings

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "DeploymentId,TokenType,TokenName,TokenSymbol,Network,DeployedBy,AssetIdentifier,"
    "TransactionHash,Status,Timestamp,Message,ReasonCode,ActorAddress,ConfirmedRound,"
    "ErrorMessage,DurationFromPreviousMs"
)


def _fingerprint(payload: dict[str, Any]) -> str:
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AuditExportRequest:
    format: AuditExportFormat = AuditExportFormat.JSON
    page: int = 1
    page_size: int = 100
    filters: DeploymentFilters = field(default_factory=DeploymentFilters)

    def normalized(self) -> dict[str, Any]:
        return {
            "format": self.format.value,
            "page": self.page,
            "pageSize": self.page_size,
            "filters": self.filters.as_dict(),
        }

    def fingerprint(self) -> str:
        return _fingerprint(self.normalized())


@dataclass
class AuditExportResult:
    success: bool
    data: str | None = None
    format: AuditExportFormat | None = None
    record_count: int = 0
    is_cached: bool = False
    generated_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "format": self.format.value if self.format is not None else None,
            "recordCount": self.record_count,
            "isCached": self.is_cached,
            "generatedAt": iso_or_none(self.generated_at),
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
        }


def _failed(code: str, message: str) -> AuditExportResult:
    return AuditExportResult(success=False, error_code=code, error_message=message)


@dataclass
class CachedExport:
    fingerprint: str
    result: AuditExportResult
    created_at: datetime
    expires_at: float


class ExportCache:
    """Idempotency cache for bulk exports, bounded by TTL and entry count.

    Writers for the same key are serialized through ``hold``; the least
    recently used entry is evicted once ``max_entries`` is exceeded.
    """

    def __init__(
        self,
        *,
        ttl_s: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_s = ttl_s
        self._max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: OrderedDict[str, CachedExport] = OrderedDict()
        self._lock = threading.Lock()
        self._key_locks = KeyedLocks()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._key_locks.hold(key):
            yield

    def get(self, key: str) -> CachedExport | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    def put(self, key: str, *, fingerprint: str, result: AuditExportResult) -> CachedExport:
        entry = CachedExport(
            fingerprint=fingerprint,
            result=replace(result),
            created_at=utcnow(),
            expires_at=self._clock() + self._ttl_s,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("audit_export_cache_evicted idempotency_key=%s", evicted)
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class _ExportDeadlineExceeded(Exception):
    pass


def _clean_csv(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value).replace("\n", " ").replace("\r", "")


def _compliance_summary(history: list[StatusEntry]) -> str:
    checks = [c for entry in history for c in entry.metadata.get("complianceChecks", []) if isinstance(c, dict)]
    if not checks:
        return "No compliance checks performed"
    passed = sum(1 for c in checks if c.get("passed"))
    return f"{passed} passed, {len(checks) - passed} failed out of {len(checks)} checks"


def _total_duration_ms(history: list[StatusEntry]) -> int:
    if len(history) < 2:
        return 0
    ordered = sorted(history, key=lambda x: x.timestamp)
    return int((ordered[-1].timestamp - ordered[0].timestamp).total_seconds() * 1000)


class AuditExporter:
    """Read-only audit views over the deployment store."""

    def __init__(
        self,
        *,
        repository: Any,
        settings: CoreSettings | None = None,
        cache: ExportCache | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or CoreSettings()
        self.cache = cache or ExportCache(
            ttl_s=self.settings.export_cache_ttl_s,
            max_entries=self.settings.export_cache_max_entries,
        )

    def _require(self, deployment_id: str) -> Deployment:
        deployment = self.repository.get(deployment_id=deployment_id)
        if deployment is None:
            logger.warning("audit_export_target_missing deployment_id=%s", deployment_id)
            raise ApiError.from_code(DEPLOYMENT_NOT_FOUND, f"Deployment {deployment_id} not found")
        return deployment

    @staticmethod
    def build_trail(deployment: Deployment, history: list[StatusEntry]) -> dict[str, Any]:
        return {
            "deploymentId": deployment.deployment_id,
            "tokenType": deployment.token_type,
            "tokenName": deployment.token_name,
            "tokenSymbol": deployment.token_symbol,
            "network": deployment.network,
            "deployedBy": deployment.deployed_by,
            "assetIdentifier": deployment.asset_identifier,
            "transactionHash": deployment.transaction_hash,
            "currentStatus": deployment.current_status.value,
            "createdAt": iso_or_none(deployment.created_at),
            "updatedAt": iso_or_none(deployment.updated_at),
            "statusHistory": [x.as_dict() for x in history],
            "complianceSummary": _compliance_summary(history),
            "totalDurationMs": _total_duration_ms(history),
            "errorSummary": deployment.error_message,
        }

    @staticmethod
    def _csv_rows(writer: Any, deployment: Deployment, history: list[StatusEntry]) -> None:
        for entry in history:
            writer.writerow(
                [
                    _clean_csv(x)
                    for x in (
                        deployment.deployment_id,
                        deployment.token_type,
                        deployment.token_name,
                        deployment.token_symbol,
                        deployment.network,
                        deployment.deployed_by,
                        deployment.asset_identifier,
                        entry.transaction_hash,
                        entry.status.value,
                        entry.timestamp,
                        entry.message,
                        entry.reason_code,
                        entry.actor_address,
                        entry.confirmed_round,
                        entry.error_message,
                        entry.duration_from_previous_status_ms,
                    )
                ]
            )

    @staticmethod
    def _csv_document(write_rows: Callable[[Any], None]) -> str:
        buf = io.StringIO()
        buf.write(CSV_HEADER + "\n")
        writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
        write_rows(writer)
        return buf.getvalue()

    def export_json(self, deployment_id: str) -> str:
        deployment = self._require(deployment_id)
        history = self.repository.get_history(deployment_id=deployment_id)
        data = json.dumps(self.build_trail(deployment, history), indent=2, ensure_ascii=False)
        logger.info("audit_export_json deployment_id=%s size=%s", deployment_id, len(data))
        return data

    def export_csv(self, deployment_id: str) -> str:
        deployment = self._require(deployment_id)
        history = self.repository.get_history(deployment_id=deployment_id)
        data = self._csv_document(lambda writer: self._csv_rows(writer, deployment, history))
        logger.info("audit_export_csv deployment_id=%s size=%s", deployment_id, len(data))
        return data

    def _validate(self, request: AuditExportRequest) -> AuditExportResult | None:
        ceiling = self.settings.export_max_page_size
        if request.page_size < 1 or request.page_size > ceiling:
            return _failed(REQ_VALIDATION_FAILED, f"Page size must be between 1 and {ceiling}")
        if request.page < 1:
            return _failed(REQ_VALIDATION_FAILED, "Page must be at least 1")
        return None

    def _run_export(self, request: AuditExportRequest, *, deadline: float | None) -> AuditExportResult:
        def _check_deadline() -> None:
            if deadline is not None and time.monotonic() > deadline:
                raise _ExportDeadlineExceeded()

        deployments = self.repository.list(filters=request.filters, page=request.page, page_size=request.page_size)
        loaded: list[tuple[Deployment, list[StatusEntry]]] = []
        for deployment in deployments:
            _check_deadline()
            loaded.append((deployment, self.repository.get_history(deployment_id=deployment.deployment_id)))
        _check_deadline()

        if request.format == AuditExportFormat.JSON:
            data = json.dumps([self.build_trail(d, h) for d, h in loaded], indent=2, ensure_ascii=False)
        else:

            def _rows(writer: Any) -> None:
                for deployment, history in loaded:
                    self._csv_rows(writer, deployment, history)

            data = self._csv_document(_rows)
        return AuditExportResult(
            success=True,
            data=data,
            format=request.format,
            record_count=len(loaded),
            generated_at=utcnow(),
        )

    def _execute(self, request: AuditExportRequest, *, timeout_s: float | None) -> AuditExportResult:
        limit = self.settings.export_timeout_s if timeout_s is None else timeout_s
        deadline = time.monotonic() + limit if limit and limit > 0 else None
        try:
            result = self._run_export(request, deadline=deadline)
        except _ExportDeadlineExceeded:
            logger.warning("audit_export_timeout timeout_s=%s", limit)
            return _failed(AUDIT_EXPORT_TIMEOUT, f"Audit export exceeded timeout of {limit}s")
        logger.info(
            "audit_export_bulk format=%s record_count=%s",
            request.format.value,
            result.record_count,
        )
        return result

    def export_bulk(
        self,
        request: AuditExportRequest,
        idempotency_key: str | None = None,
        *,
        timeout_s: float | None = None,
    ) -> AuditExportResult:
        invalid = self._validate(request)
        if invalid is not None:
            return invalid
        if not idempotency_key:
            return self._execute(request, timeout_s=timeout_s)

        fingerprint = request.fingerprint()
        with self.cache.hold(idempotency_key):
            cached = self.cache.get(idempotency_key)
            if cached is not None:
                if cached.fingerprint != fingerprint:
                    logger.warning("audit_export_idempotency_conflict idempotency_key=%s", idempotency_key)
                    return _failed(
                        IDEMPOTENCY_CONFLICT,
                        "Idempotency key already used with different request parameters",
                    )
                logger.info("audit_export_cache_hit idempotency_key=%s", idempotency_key)
                return replace(cached.result, is_cached=True)

            result = self._execute(request, timeout_s=timeout_s)
            if result.success:
                self.cache.put(idempotency_key, fingerprint=fingerprint, result=result)
            return result

    def verify_history(self, deployment_id: str) -> dict[str, Any]:
        self._require(deployment_id)
        history = self.repository.get_history(deployment_id=deployment_id)
        prev_hash = ""
        for idx, entry in enumerate(history):
            if entry.prev_hash != prev_hash:
                return {
                    "valid": False,
                    "checkedCount": idx + 1,
                    "reason": "prev_hash_mismatch",
                    "entryId": entry.entry_id,
                }
            expected = compute_entry_hash(entry=entry, prev_hash=entry.prev_hash)
            if entry.entry_hash != expected:
                return {
                    "valid": False,
                    "checkedCount": idx + 1,
                    "reason": "entry_hash_mismatch",
                    "entryId": entry.entry_id,
                }
            prev_hash = entry.entry_hash
        return {
            "valid": True,
            "checkedCount": len(history),
            "lastHash": prev_hash,
        }
