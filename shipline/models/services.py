"""Service catalog models: the fixed set of named services."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict


class Service(BaseModel):
    """A deployable service. Identity is ``name``.

    ``current_version`` is replaced only when a production rollout of the
    service has been verified healthy.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    source_location: Path
    current_version: str | None = None
    health_endpoint: str = "/health"
    port: int = 8000
    database: str | None = None


# The e-commerce topology: one database per service.
DEFAULT_SERVICES: list[Service] = [
    Service(
        name="product",
        source_location=Path("services/product-service"),
        port=8001,
        database="product_db",
    ),
    Service(
        name="customer",
        source_location=Path("services/customer-service"),
        port=8002,
        database="customer_db",
    ),
    Service(
        name="order",
        source_location=Path("services/order-service"),
        port=8003,
        database="order_db",
    ),
]
