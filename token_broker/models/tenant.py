"""Tenant identity shared by every cache, lock and backend lookup."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantKey:
    """A store's OAuth scope: environment, store-chain code (sigla) and store id."""

    environment: str
    sigla: str
    store_id: str

    @property
    def _suffix(self) -> str:
        return f"{self.environment}:{self.sigla}:{self.store_id}"

    @property
    def cache_key(self) -> str:
        return f"token:{self._suffix}"

    @property
    def lock_key(self) -> str:
        return f"lock:refresh:{self._suffix}"

    def labels(self) -> dict[str, str]:
        """Metric labels in the shape dashboards already query."""
        return {"env": self.environment, "sigla": self.sigla, "lojaId": self.store_id}


__all__ = ["TenantKey"]
