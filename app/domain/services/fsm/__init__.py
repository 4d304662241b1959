"""
FSM (field-service-management) API integration.

Typed GraphQL client, per-operation result models and the custom-field
configuration map used for write-back markers.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.services.fsm.client import FSMClient
from app.domain.services.fsm.custom_fields import CustomFieldRegistry, custom_field_registry


def get_fsm_client(account_id: str, db: AsyncSession) -> FSMClient:
    """Client for one account, sharing the process-wide circuit breaker and field map"""
    return FSMClient(account_id, db)


__all__ = [
    "FSMClient",
    "CustomFieldRegistry",
    "custom_field_registry",
    "get_fsm_client",
]
