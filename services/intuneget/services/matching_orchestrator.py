"""Batch matching of a migration project's apps against the package catalog.

A run walks the project's eligible apps in keyset-paginated waves:

    pending apps            (default)
    every non-manual app    (force_rematch)

Each wave matches its apps concurrently and settles all of them before
anything is written; one app's failure never cancels its siblings. Failed
apps stay pending for the next run. Waves are strictly sequential: results
and recomputed counters are committed before the next wave is read.

Only one run per project at a time, enforced with a Redis lock. Progress is
published to Redis after each wave for the polling endpoint. A project
deleted mid-run is noticed at the next wave boundary and the run stops.
"""

import asyncio
import json
import secrets
import uuid
from dataclasses import asdict, dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from intuneget.catalog.protocol import PackageCatalog
from intuneget.config import MatchingConfig, settings
from intuneget.db.models import SccmApp, SccmMigration
from intuneget.db.session import SessionFactory, get_db_session
from intuneget.logging_config import get_logger
from intuneget.redis.client import get_redis_client, redis_key
from intuneget.services import migration_service
from intuneget.services.matching_service import (
    AppIdentity,
    MatchResult,
    MatchStatus,
    match_application,
)

logger = get_logger(__name__)


# Background runs started by this process, keyed by project id
_active_runs: dict[uuid.UUID, asyncio.Task] = {}


class MatchingInProgressError(Exception):
    """A matching run already holds the project's lock."""


@dataclass
class MatchingProgress:
    total: int = 0
    processed: int = 0
    matched: int = 0
    partial: int = 0
    unmatched: int = 0
    errors: int = 0
    status: str = "matching"


# --- Lock & progress ---


async def acquire_lock(migration_id: uuid.UUID, ttl: int) -> str | None:
    """Take the project's matching lock. Returns the lock token, or None if held."""
    redis = get_redis_client()
    token = secrets.token_hex(16)
    acquired = await redis.set(redis_key("matching", "lock", migration_id), token, nx=True, ex=ttl)
    return token if acquired else None


async def release_lock(migration_id: uuid.UUID, token: str) -> None:
    """Release the lock if this run still owns it."""
    redis = get_redis_client()
    key = redis_key("matching", "lock", migration_id)
    try:
        if await redis.get(key) == token:
            await redis.delete(key)
    except Exception as e:
        # The lock expires on its own
        logger.warning("Failed to release matching lock", migration_id=str(migration_id), error=str(e))


async def publish_progress(migration_id: uuid.UUID, progress: MatchingProgress, ttl: int) -> None:
    """Best-effort progress snapshot for pollers."""
    try:
        redis = get_redis_client()
        await redis.set(redis_key("matching", "progress", migration_id), json.dumps(asdict(progress)), ex=ttl)
    except Exception as e:
        logger.warning("Failed to publish matching progress", migration_id=str(migration_id), error=str(e))


async def get_matching_progress(migration_id: uuid.UUID) -> MatchingProgress | None:
    """Read the last published progress. None when nothing is published or Redis is down."""
    try:
        redis = get_redis_client()
        raw = await redis.get(redis_key("matching", "progress", migration_id))
    except Exception as e:
        logger.warning("Failed to read matching progress", migration_id=str(migration_id), error=str(e))
        return None
    if raw is None:
        return None
    return MatchingProgress(**json.loads(raw))


# --- Run ---


def _eligible(migration_id: uuid.UUID, force_rematch: bool):
    conditions = [SccmApp.migration_id == migration_id]
    if force_rematch:
        conditions.append(SccmApp.match_status != "manual")
    else:
        conditions.append(SccmApp.match_status == "pending")
    return conditions


async def _project_exists(db: AsyncSession, migration_id: uuid.UUID) -> bool:
    result = await db.execute(select(SccmMigration.id).where(SccmMigration.id == migration_id))
    return result.scalar_one_or_none() is not None


async def run_matching(
    migration_id: uuid.UUID,
    force_rematch: bool = False,
    *,
    catalog: PackageCatalog,
    session_factory: SessionFactory = get_db_session,
    config: MatchingConfig | None = None,
    wave_size: int | None = None,
) -> MatchingProgress:
    """Match every eligible app of a project and move it to ready (or error)."""
    cfg = config or settings.matching
    size = wave_size or cfg.wave_size
    progress = MatchingProgress()

    async with session_factory() as db:
        if not await _project_exists(db, migration_id):
            logger.warning("Matching run for missing project", migration_id=str(migration_id))
            progress.status = "deleted"
            return progress
        progress.total = (
            await db.execute(
                select(func.count()).select_from(SccmApp).where(*_eligible(migration_id, force_rematch))
            )
        ).scalar_one()

    logger.info(
        "Matching run started",
        migration_id=str(migration_id),
        force_rematch=force_rematch,
        total=progress.total,
    )
    await publish_progress(migration_id, progress, cfg.lock_ttl_seconds)

    last_id: uuid.UUID | None = None
    while True:
        async with session_factory() as db:
            stmt = select(SccmApp.id, SccmApp.display_name, SccmApp.manufacturer, SccmApp.version).where(
                *_eligible(migration_id, force_rematch)
            )
            if last_id is not None:
                stmt = stmt.where(SccmApp.id > last_id)
            rows = (await db.execute(stmt.order_by(SccmApp.id).limit(size))).all()

        if not rows:
            break
        last_id = rows[-1].id

        outcomes = await asyncio.gather(
            *(
                match_application(
                    AppIdentity(display_name=r.display_name, manufacturer=r.manufacturer, version=r.version),
                    catalog,
                    cfg,
                )
                for r in rows
            ),
            return_exceptions=True,
        )

        async with session_factory() as db:
            if not await _project_exists(db, migration_id):
                logger.info("Project deleted during matching, stopping", migration_id=str(migration_id))
                progress.status = "deleted"
                return progress

            for row, outcome in zip(rows, outcomes, strict=True):
                progress.processed += 1
                if isinstance(outcome, MatchResult):
                    if not await migration_service.apply_match_result(db, row.id, outcome):
                        # Linked manually while the wave was in flight
                        continue
                    match outcome.status:
                        case MatchStatus.MATCHED:
                            progress.matched += 1
                        case MatchStatus.PARTIAL:
                            progress.partial += 1
                        case MatchStatus.UNMATCHED:
                            progress.unmatched += 1
                elif isinstance(outcome, Exception):
                    progress.errors += 1
                    logger.warning(
                        "App matching failed, left pending",
                        migration_id=str(migration_id),
                        app_id=str(row.id),
                        error=str(outcome),
                    )
                else:
                    raise outcome
            await migration_service.recompute_counters(db, migration_id)

        await publish_progress(migration_id, progress, cfg.lock_ttl_seconds)

    error_ratio = progress.errors / progress.processed if progress.processed else 0.0
    async with session_factory() as db:
        migration = await db.get(SccmMigration, migration_id)
        if migration is None:
            progress.status = "deleted"
            return progress
        if error_ratio > cfg.max_error_ratio:
            target = "error"
            message = f"{progress.errors} of {progress.processed} apps failed to match"
        else:
            target, message = "ready", ""
        if migration.status == "matching":
            await migration_service.transition_migration(db, migration, target, message)
        progress.status = migration.status

    await publish_progress(migration_id, progress, cfg.lock_ttl_seconds)
    logger.info(
        "Matching run finished",
        migration_id=str(migration_id),
        status=progress.status,
        processed=progress.processed,
        matched=progress.matched,
        partial=progress.partial,
        unmatched=progress.unmatched,
        errors=progress.errors,
    )
    return progress


async def _fail_run(migration_id: uuid.UUID, message: str) -> None:
    async with get_db_session() as db:
        migration = await db.get(SccmMigration, migration_id)
        if migration is not None and migration.status == "matching":
            await migration_service.transition_migration(db, migration, "error", message)


async def _run_in_background(
    migration_id: uuid.UUID, force_rematch: bool, catalog: PackageCatalog, lock_token: str
) -> None:
    try:
        await run_matching(migration_id, force_rematch, catalog=catalog)
    except asyncio.CancelledError:
        logger.warning("Matching run cancelled", migration_id=str(migration_id))
        await _fail_run(migration_id, "Matching run interrupted by shutdown")
        raise
    except Exception:
        logger.exception("Matching run crashed", migration_id=str(migration_id))
        await _fail_run(migration_id, "Matching run failed unexpectedly")
    finally:
        await release_lock(migration_id, lock_token)
        _active_runs.pop(migration_id, None)


async def start_matching(
    db: AsyncSession,
    migration: SccmMigration,
    catalog: PackageCatalog,
    force_rematch: bool = False,
) -> None:
    """Start a background matching run and return immediately.

    Commits the transition to 'matching' so the run and pollers see it. A
    project left in 'matching' by a process that died is taken over once its
    lock has expired.

    Raises:
        MatchingInProgressError: If a run already holds the project's lock.
        ValueError: If the project cannot enter 'matching' from its status.
    """
    cfg = settings.matching
    token = await acquire_lock(migration.id, cfg.lock_ttl_seconds)
    if token is None:
        raise MatchingInProgressError(f"Matching already in progress for {migration.id}")

    try:
        if migration.status == "matching" and not is_run_active(migration.id):
            # The lock was free, so the process that ran this project died mid-run
            logger.warning("Taking over abandoned matching run", migration_id=str(migration.id))
            await migration_service.transition_migration(
                db, migration, "error", "Matching run abandoned"
            )
        await migration_service.transition_migration(db, migration, "matching")
        await db.commit()
    except Exception:
        await release_lock(migration.id, token)
        raise

    _active_runs[migration.id] = asyncio.create_task(
        _run_in_background(migration.id, force_rematch, catalog, token)
    )
    logger.info("Matching scheduled", migration_id=str(migration.id), force_rematch=force_rematch)


def is_run_active(migration_id: uuid.UUID) -> bool:
    """Whether this process is running a matching job for the project."""
    task = _active_runs.get(migration_id)
    return task is not None and not task.done()


async def cancel_active_runs() -> None:
    """Cancel this process's matching runs. Called on shutdown, before close_db()."""
    tasks = list(_active_runs.values())
    if not tasks:
        return
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Matching runs cancelled", count=len(tasks))
