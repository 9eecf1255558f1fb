"""Migration audit trail.

Rows go to migration_history in their own session so an audit write never
joins, or breaks, the caller's transaction. Failures are logged and dropped.
"""

import uuid
from typing import Any

from intuneget.db.models import MigrationHistory
from intuneget.db.session import SessionFactory, get_db_session
from intuneget.logging_config import get_logger

logger = get_logger(__name__)


async def record_action(
    migration_id: uuid.UUID,
    user_id: str,
    tenant_id: str,
    action: str,
    *,
    app_id: uuid.UUID | None = None,
    app_name: str | None = None,
    previous_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
    success: bool = True,
    error_message: str | None = None,
    session_factory: SessionFactory = get_db_session,
) -> None:
    """Append one audit row. Never raises."""
    try:
        async with session_factory() as db:
            db.add(
                MigrationHistory(
                    migration_id=migration_id,
                    user_id=user_id,
                    tenant_id=tenant_id,
                    action=action,
                    app_id=app_id,
                    app_name=app_name,
                    previous_value=previous_value,
                    new_value=new_value,
                    success=success,
                    error_message=error_message,
                )
            )
            await db.commit()
    except Exception as e:
        logger.warning(
            "Failed to record migration history",
            migration_id=str(migration_id),
            action=action,
            error=str(e),
        )
