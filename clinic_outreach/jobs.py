"""
Periodic batch jobs: offer expiry, recall outreach and recall identification.

Each job takes a PostgreSQL advisory lock so that only one worker (an app
process or a cron run) does the work at a time.  The lock is held on its
own connection; the job itself runs in a normal session and commits per
item.

Cron usage:

    python -m clinic_outreach.jobs expire
    python -m clinic_outreach.jobs outreach
    python -m clinic_outreach.jobs identify
"""

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, text

from clinic_outreach.config import get_settings
from clinic_outreach.database import AsyncSessionLocal, engine
from clinic_outreach.models.recall import RecallCampaign
from clinic_outreach.services.audit_service import SCHEDULER_ACTOR
from clinic_outreach.services.recall_service import RecallService
from clinic_outreach.services.waitlist_service import expire_old_notifications

logger = logging.getLogger(__name__)

EXPIRY_LOCK_ID = 111222333
OUTREACH_LOCK_ID = 111222334
IDENTIFY_LOCK_ID = 111222335

# Last successful run per job, read by the health endpoint
job_health: dict[str, float] = {}


async def _run_locked(lock_id: int, name: str, job: Callable[..., Awaitable]):
    """Run ``job(db)`` under an advisory lock; returns None if another worker holds it."""
    async with engine.connect() as lock_conn:
        lock_result = await lock_conn.execute(
            text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}
        )
        acquired = lock_result.scalar_one()
        await lock_conn.commit()
        if not acquired:
            logger.info("%s: lock held by another worker, skipping", name)
            return None

        try:
            async with AsyncSessionLocal() as db:
                result = await job(db)
            job_health[name] = time.time()
            return result
        finally:
            await lock_conn.execute(
                text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id}
            )
            await lock_conn.commit()


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

async def run_expiry_sweep() -> Optional[int]:
    """Expire stale waitlist offers across every tenant."""
    async def _job(db):
        expired = await expire_old_notifications(db)
        if expired:
            logger.info("expiry_sweep: expired %d offers", expired)
        return expired

    return await _run_locked(EXPIRY_LOCK_ID, "expiry_sweep", _job)


async def _campaigns(db, auto_identify_only: bool = False) -> list[tuple]:
    stmt = select(RecallCampaign.id, RecallCampaign.tenant_id).where(RecallCampaign.is_active.is_(True))
    if auto_identify_only:
        stmt = stmt.where(RecallCampaign.auto_identify.is_(True))
    result = await db.execute(stmt.order_by(RecallCampaign.created_at))
    return [tuple(row) for row in result.all()]


async def run_recall_outreach() -> Optional[dict]:
    """Run one outreach pass for every active campaign.  One failing campaign does not stop the rest."""
    async def _job(db):
        summary = {
            "campaigns": 0, "processed": 0, "successful": 0, "failed": 0, "skipped": 0, "exhausted": 0, "errors": [],
        }
        for campaign_id, tenant_id in await _campaigns(db):
            try:
                result = await RecallService.process_outreach(db, tenant_id, campaign_id, actor=SCHEDULER_ACTOR)
            except Exception as e:
                await db.rollback()
                logger.warning("recall_outreach: campaign %s failed: %s", campaign_id, e)
                summary["errors"].append(f"Campaign {campaign_id}: {e}")
                continue
            summary["campaigns"] += 1
            for key in ("processed", "successful", "failed", "skipped", "exhausted"):
                summary[key] += result[key]
            summary["errors"].extend(result["errors"])
        logger.info(
            "recall_outreach: %d campaigns, %d processed, %d failed",
            summary["campaigns"], summary["processed"], summary["failed"],
        )
        return summary

    return await _run_locked(OUTREACH_LOCK_ID, "recall_outreach", _job)


async def run_auto_identify() -> Optional[dict]:
    """Identify patients for every active campaign with ``auto_identify`` on."""
    async def _job(db):
        summary = {"campaigns": 0, "identified": 0, "created": 0, "skipped": 0, "errors": []}
        for campaign_id, tenant_id in await _campaigns(db, auto_identify_only=True):
            try:
                result = await RecallService.identify_patients(db, tenant_id, campaign_id, actor=SCHEDULER_ACTOR)
            except Exception as e:
                await db.rollback()
                logger.warning("auto_identify: campaign %s failed: %s", campaign_id, e)
                summary["errors"].append(f"Campaign {campaign_id}: {e}")
                continue
            summary["campaigns"] += 1
            for key in ("identified", "created", "skipped"):
                summary[key] += result[key]
            summary["errors"].extend(result["errors"])
        logger.info(
            "auto_identify: %d campaigns, %d enrolled, %d skipped",
            summary["campaigns"], summary["created"], summary["skipped"],
        )
        return summary

    return await _run_locked(IDENTIFY_LOCK_ID, "auto_identify", _job)


# ---------------------------------------------------------------------------
# In-app loop
# ---------------------------------------------------------------------------

async def expiry_sweep_loop(interval_seconds: int) -> None:
    """Background task: sweep expired offers every ``interval_seconds``."""
    logger.info("expiry_sweep_loop: started (every %ds)", interval_seconds)
    consecutive_errors = 0

    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await run_expiry_sweep()
            consecutive_errors = 0
        except asyncio.CancelledError:
            raise
        except Exception as e:
            consecutive_errors += 1
            logger.warning(
                "expiry_sweep_loop: error in cycle (%d consecutive): %s",
                consecutive_errors, e,
            )
            if consecutive_errors >= 3:
                # Fresh connections for the next cycle; back off while the DB is down
                await engine.dispose()
                await asyncio.sleep(30)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

JOBS = {
    "expire": run_expiry_sweep,
    "outreach": run_recall_outreach,
    "identify": run_auto_identify,
}


async def _run_and_dispose(job: Callable[[], Awaitable]):
    try:
        return await job()
    finally:
        await engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m clinic_outreach.jobs",
        description="Run a clinic outreach batch job once.",
    )
    parser.add_argument("job", choices=sorted(JOBS), help="job to run")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=get_settings().LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    result = asyncio.run(_run_and_dispose(JOBS[args.job]))
    if result is None:
        logger.info("%s: skipped", args.job)
    print(json.dumps(result, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
