"""
Scheduled background jobs, registered by server.py on the APScheduler instance.
Each run_* returns a dict with "message" (and optionally "count").
"""
import logging

logger = logging.getLogger(__name__)


async def run_guard_sweep():
    """Drop expired rate-limit buckets and idempotency keys from the guard store."""
    try:
        from utils.rate_limiter import guard_store
        count = await guard_store.sweep()
        logger.info(f"Guard sweep job completed: {count} expired entries removed")
        return {"message": f"Guard entries removed: {count}", "count": count}
    except Exception as e:
        logger.error(f"Guard sweep job failed: {e}")
        raise
