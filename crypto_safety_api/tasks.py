"""
RQ tasks for background maintenance.

Synchronous wrappers around DatabaseService coroutines, designed to be
executed by RQ workers. Expired price cache rows and old query log entries
are never removed on the request path; these jobs do it.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from redis import Redis
from rq import Queue

from .config import config

logger = logging.getLogger(__name__)

MAINTENANCE_QUEUE = "maintenance"


def get_redis_connection() -> Redis:
    """Get Redis connection from config."""
    return Redis.from_url(config.REDIS_URL)


def get_queue(name: str = MAINTENANCE_QUEUE) -> Queue:
    """Get an RQ queue."""
    return Queue(name, connection=get_redis_connection())


def _database():
    from .database import DatabaseService

    return DatabaseService(config.MONGO_URL, config.MONGO_DB)


def purge_expired_cache_task() -> dict:
    """RQ task: delete durable price cache rows whose ttl_at has passed."""
    logger.info("Starting expired price cache purge")

    try:
        removed = asyncio.run(_database().purge_expired_cache())
        return {
            "status": "success",
            "timestamp": datetime.utcnow().isoformat(),
            "removed": removed,
        }
    except Exception as e:
        logger.exception(f"Price cache purge failed: {e}")
        return {
            "status": "error",
            "timestamp": datetime.utcnow().isoformat(),
            "error": str(e),
        }


def purge_old_query_logs_task(days: Optional[int] = None) -> dict:
    """
    RQ task: delete query log entries older than the retention window.

    Args:
        days: Retention in days; QUERY_LOG_RETENTION_DAYS when omitted
    """
    days = days if days is not None else config.QUERY_LOG_RETENTION_DAYS
    logger.info(f"Starting query log purge (retention {days} days)")

    try:
        removed = asyncio.run(_database().purge_old_logs(days))
        return {
            "status": "success",
            "timestamp": datetime.utcnow().isoformat(),
            "removed": removed,
            "days": days,
        }
    except Exception as e:
        logger.exception(f"Query log purge failed: {e}")
        return {
            "status": "error",
            "timestamp": datetime.utcnow().isoformat(),
            "error": str(e),
        }


def schedule_maintenance(queue: Optional[Queue] = None) -> list:
    """Enqueue both maintenance jobs. Returns the RQ job ids."""
    queue = queue or get_queue()
    jobs = [
        queue.enqueue(purge_expired_cache_task),
        queue.enqueue(purge_old_query_logs_task),
    ]
    logger.info(f"Enqueued {len(jobs)} maintenance jobs on '{queue.name}'")
    return [job.id for job in jobs]
