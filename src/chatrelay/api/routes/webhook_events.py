"""Webhook audit log (read only)."""

from fastapi import APIRouter, Depends, Query

from chatrelay.api.deps import get_storage
from chatrelay.infra.storage import Storage

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.get("/events")
def list_webhook_events(
    limit: int = Query(50, ge=1, le=500),
    webhook_id: str | None = Query(None),
    instance_id: str | None = Query(None),
    storage: Storage = Depends(get_storage),
) -> list[dict]:
    """Most recent webhook deliveries first."""
    events = storage.list_webhook_events(
        limit=limit, webhook_id=webhook_id, instance_id=instance_id
    )
    return [event.to_dict() for event in events]
