from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skugate.domain.billing import BillableItem
from skugate.domain.models import InventoryItem
from skugate.persistence.guards import tenant_predicate


async def stream_billable_items(
    session: AsyncSession,
    tenant_id: str,
    *,
    batch_size: int = 500,
) -> AsyncIterator[BillableItem]:
    # Server-side cursor keeps full-tenant scans flat in memory.
    stmt = (
        select(
            InventoryItem.tenant_id,
            InventoryItem.item_status,
            InventoryItem.visibility,
            InventoryItem.availability,
            InventoryItem.price_cents,
            InventoryItem.currency,
            InventoryItem.image_url,
        )
        .where(tenant_predicate(InventoryItem, tenant_id))
        .execution_options(yield_per=batch_size)
    )
    result = await session.stream(stmt)
    async for row in result:
        yield BillableItem.from_row(row)
