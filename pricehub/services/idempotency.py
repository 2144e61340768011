import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.models.price_change import IdempotencyKey


def make_idempotency_key(tenant_id: str, external_ref: str, run_id: Any, new_amount: int) -> str:
    """Identity of one external price write: the same run never writes the same price twice."""
    return f"{tenant_id}:{external_ref}:{run_id}:{new_amount}"


async def is_applied(session: AsyncSession, key: str) -> bool:
    result = await session.execute(select(IdempotencyKey.key).where(IdempotencyKey.key == key))
    return result.scalar_one_or_none() is not None


def record_consumed(session: AsyncSession, key: str, tenant_id: str, rule_run_id: uuid.UUID | None = None,
                    rule_target_id: uuid.UUID | None = None) -> IdempotencyKey:
    """Add the ledger row to the caller's transaction; a duplicate surfaces as IntegrityError on flush."""
    row = IdempotencyKey(key=key, tenant_id=tenant_id, rule_run_id=rule_run_id, rule_target_id=rule_target_id)
    session.add(row)
    return row
