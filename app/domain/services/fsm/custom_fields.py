"""
Custom-field configuration map.

Markers written back to the FSM (CHANGE_ORDER_REQUIRED, RECON_STATUS,
MARGIN_RISK, Billing Stage) are addressed by label, but the API wants
field ids. The label -> id map is loaded once per account and reloaded
after CUSTOM_FIELD_CACHE_TTL_SECONDS.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.core.config import settings
from app.core.exceptions import CustomFieldMissingError
from app.core.logging import get_logger

if TYPE_CHECKING:
    from app.domain.services.fsm.client import FSMClient

logger = get_logger(__name__)

# Labels this service writes to
CHANGE_ORDER_REQUIRED_FIELD = "CHANGE_ORDER_REQUIRED"
RECON_STATUS_FIELD = "RECON_STATUS"
MARGIN_RISK_FIELD = "MARGIN_RISK"
BILLING_STAGE_FIELD = "Billing Stage"

REQUIRED_FIELD_LABELS = (
    CHANGE_ORDER_REQUIRED_FIELD,
    RECON_STATUS_FIELD,
    MARGIN_RISK_FIELD,
    BILLING_STAGE_FIELD,
)


@dataclass
class _AccountFieldMap:
    ids_by_label: dict[str, str] = field(default_factory=dict)
    loaded_at: float = 0.0


class CustomFieldRegistry:
    """Per-account label -> custom field id map with a fixed TTL"""

    def __init__(self, ttl_seconds: float | None = None) -> None:
        self._ttl_seconds = ttl_seconds
        self._maps: dict[str, _AccountFieldMap] = {}

    @property
    def ttl_seconds(self) -> float:
        if self._ttl_seconds is not None:
            return self._ttl_seconds
        return float(settings.CUSTOM_FIELD_CACHE_TTL_SECONDS)

    def _is_stale(self, account_id: str) -> bool:
        field_map = self._maps.get(account_id)
        if field_map is None:
            return True
        return time.monotonic() - field_map.loaded_at >= self.ttl_seconds

    async def load(self, client: FSMClient) -> dict[str, str]:
        """Fetch the account's configurations and replace its map"""
        configs = await client.get_custom_field_configurations()
        ids_by_label = {config.label: config.id for config in configs}
        self._maps[client.account_id] = _AccountFieldMap(ids_by_label=ids_by_label, loaded_at=time.monotonic())

        missing = [label for label in REQUIRED_FIELD_LABELS if label not in ids_by_label]
        if missing:
            logger.warning(
                "Custom fields missing on FSM account",
                extra_data={"account_id": client.account_id, "missing": missing},
            )
        return ids_by_label

    async def resolve(self, client: FSMClient, label: str) -> str:
        """Field id for a label; raises CustomFieldMissingError if the account lacks it"""
        if self._is_stale(client.account_id):
            await self.load(client)

        field_id = self._maps[client.account_id].ids_by_label.get(label)
        if field_id is None:
            raise CustomFieldMissingError(client.account_id, label)
        return field_id

    def invalidate(self, account_id: str | None = None) -> None:
        if account_id is None:
            self._maps.clear()
        else:
            self._maps.pop(account_id, None)


custom_field_registry = CustomFieldRegistry()


async def warm_custom_field_registry(clients: list[FSMClient]) -> None:
    """Load the map for every connected account at startup; failures are logged"""
    results = await asyncio.gather(
        *(custom_field_registry.load(client) for client in clients),
        return_exceptions=True,
    )
    for client, result in zip(clients, results):
        if isinstance(result, Exception):
            logger.warning(
                "Failed to load custom field configuration",
                extra_data={"account_id": client.account_id, "error": str(result)},
            )
