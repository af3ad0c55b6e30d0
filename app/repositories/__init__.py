from app.repositories.deployments import InMemoryDeploymentsRepository, PostgresDeploymentsRepository
from app.repositories.webhooks import DeliveryQuery, InMemoryWebhooksRepository

__all__ = [
    "InMemoryDeploymentsRepository",
    "PostgresDeploymentsRepository",
    "DeliveryQuery",
    "InMemoryWebhooksRepository",
]
