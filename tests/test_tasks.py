"""
Tests for RQ maintenance tasks.
"""
from unittest.mock import patch, AsyncMock, MagicMock

from crypto_safety_api import tasks


def fake_database(**methods):
    db = MagicMock()
    for name, mock in methods.items():
        setattr(db, name, mock)
    return db


class TestPurgeTasks:

    def test_purge_expired_cache_success(self):
        db = fake_database(purge_expired_cache=AsyncMock(return_value=4))

        with patch('crypto_safety_api.tasks._database', return_value=db):
            result = tasks.purge_expired_cache_task()

        assert result["status"] == "success"
        assert result["removed"] == 4

    def test_purge_expired_cache_error_reported(self):
        db = fake_database(purge_expired_cache=AsyncMock(side_effect=RuntimeError("mongo down")))

        with patch('crypto_safety_api.tasks._database', return_value=db):
            result = tasks.purge_expired_cache_task()

        assert result["status"] == "error"
        assert "mongo down" in result["error"]

    def test_purge_logs_uses_configured_retention(self):
        db = fake_database(purge_old_logs=AsyncMock(return_value=2))

        with patch('crypto_safety_api.tasks._database', return_value=db), \
                patch.object(tasks.config, 'QUERY_LOG_RETENTION_DAYS', 14):
            result = tasks.purge_old_query_logs_task()

        db.purge_old_logs.assert_awaited_once_with(14)
        assert result["days"] == 14

    def test_purge_logs_explicit_days(self):
        db = fake_database(purge_old_logs=AsyncMock(return_value=0))

        with patch('crypto_safety_api.tasks._database', return_value=db):
            tasks.purge_old_query_logs_task(days=90)

        db.purge_old_logs.assert_awaited_once_with(90)


class TestScheduling:

    def test_schedule_enqueues_both_jobs(self):
        queue = MagicMock()
        queue.name = "maintenance"
        queue.enqueue.side_effect = [MagicMock(id="job-1"), MagicMock(id="job-2")]

        job_ids = tasks.schedule_maintenance(queue)

        assert job_ids == ["job-1", "job-2"]
        enqueued = [call.args[0] for call in queue.enqueue.call_args_list]
        assert enqueued == [tasks.purge_expired_cache_task, tasks.purge_old_query_logs_task]

    def test_get_queue_uses_redis_url(self):
        with patch('crypto_safety_api.tasks.Redis') as mock_redis, \
                patch('crypto_safety_api.tasks.Queue') as mock_queue:
            tasks.get_queue()

        mock_redis.from_url.assert_called_once_with(tasks.config.REDIS_URL)
        mock_queue.assert_called_once_with("maintenance", connection=mock_redis.from_url.return_value)
