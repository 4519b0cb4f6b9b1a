"""Resolve the store a request targets from its query string."""

from fastapi import Depends, Query

from token_broker.dependencies.clients import get_token_metrics
from token_broker.models.tenant import TenantKey
from token_broker.services import TokenMetrics


def get_tenant(
    metrics: TokenMetrics = Depends(get_token_metrics),
    store_id: str = Query(..., alias="lojaId", min_length=1, description="Store identifier."),
    sigla: str = Query(..., min_length=1, description="Store-chain code."),
    env: str = Query(..., min_length=1, description="Environment: prod, hom or dev."),
) -> TenantKey:
    """Build the tenant key and record that the store was seen."""
    tenant = TenantKey(environment=env, sigla=sigla, store_id=store_id)
    metrics.store_seen(tenant)
    return tenant


__all__ = ["get_tenant"]
