from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from app.audit_export import AuditExporter
from app.db.postgres import PostgresTxRunner
from app.lifecycle import DeploymentLifecycle
from app.repositories import (
    InMemoryDeploymentsRepository,
    InMemoryWebhooksRepository,
    PostgresDeploymentsRepository,
)
from app.settings import CoreSettings
from app.webhooks import Transport, WebhookDispatcher, WebhookService

logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    settings: CoreSettings
    deployments: Any
    webhooks_repository: InMemoryWebhooksRepository
    dispatcher: WebhookDispatcher
    webhooks: WebhookService
    lifecycle: DeploymentLifecycle
    exporter: AuditExporter

    def close(self) -> None:
        self.dispatcher.shutdown(wait=False)


def create_deployments_repository(settings: CoreSettings) -> Any:
    backend = settings.deployment_store_backend
    if backend == "memory":
        return InMemoryDeploymentsRepository()
    if backend == "postgres":
        if not settings.postgres_dsn:
            raise ValueError("POSTGRES_DSN must be set when DEPLOYMENT_STORE_BACKEND=postgres")
        repo = PostgresDeploymentsRepository(tx_runner=PostgresTxRunner(settings.postgres_dsn))
        repo.ensure_schema()
        return repo
    raise RuntimeError(f"unsupported deployment store backend: {backend}")


def build_services(
    settings: CoreSettings | None = None,
    *,
    deployments: Any = None,
    transport: Transport | None = None,
) -> CoreServices:
    settings = settings or CoreSettings()
    deployments = deployments if deployments is not None else create_deployments_repository(settings)
    webhooks_repository = InMemoryWebhooksRepository()
    dispatcher = WebhookDispatcher(repository=webhooks_repository, settings=settings, transport=transport)
    services = CoreServices(
        settings=settings,
        deployments=deployments,
        webhooks_repository=webhooks_repository,
        dispatcher=dispatcher,
        webhooks=WebhookService(repository=webhooks_repository, dispatcher=dispatcher),
        lifecycle=DeploymentLifecycle(repository=deployments, dispatcher=dispatcher, settings=settings),
        exporter=AuditExporter(repository=deployments, settings=settings),
    )
    logger.info(
        "core_services_ready backend=%s webhook_workers=%s",
        settings.deployment_store_backend,
        settings.webhook_max_workers,
    )
    return services


def create_services_from_env(environ: Mapping[str, str] | None = None) -> CoreServices:
    return build_services(CoreSettings.from_env(environ))
