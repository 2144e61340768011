import json
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from pricehub.core.logging import correlation_id_var
from pricehub.models.audit import AuditLog


def _ensure_jsonable(value: Any) -> Any:
    if value is None:
        return None
    try:
        json.dumps(value, ensure_ascii=False)
        return value
    except (TypeError, ValueError):
        # Coerce UUIDs, datetimes and pydantic leftovers through str()
        return json.loads(json.dumps(value, ensure_ascii=False, default=str))


class AuditService:
    """
    Append-only audit sink.

    Records are added to the caller's session and committed (or rolled back)
    with the state change they describe; this service never commits.
    """

    def __init__(self, session: AsyncSession, actor: str):
        self.session = session
        self.actor = actor

    def record(self, *, tenant_id: str, entity: str, entity_id: Any, action: str,
               explain: dict[str, Any] | None = None, project_id: str | None = None,
               correlation_id: Any = None) -> AuditLog:
        correlation = correlation_id if correlation_id is not None else correlation_id_var.get()
        entry = AuditLog(
            tenant_id=tenant_id,
            project_id=project_id,
            entity=entity,
            entity_id=str(entity_id),
            action=action,
            actor=self.actor,
            explain=_ensure_jsonable(explain),
            correlation_id=None if correlation is None else str(correlation),
        )
        self.session.add(entry)
        return entry
