from __future__ import annotations

from unittest.mock import MagicMock, patch

from facturador.services.exceptions import AllocationConflictError
from facturador.services.scheduler import JOB_ID, SubmissionScheduler


def _coordinator(results=None, interval=60.0):
    coordinator = MagicMock()
    coordinator.settings.scheduler_interval = interval
    coordinator.process_due.return_value = results or []
    return coordinator


class TestRunOnce:
    def test_counts_processed_records(self):
        scheduler = SubmissionScheduler(_coordinator(results=["a", "b"]))
        assert scheduler.run_once() == 2

    def test_errors_do_not_escape(self):
        coordinator = _coordinator()
        coordinator.process_due.side_effect = AllocationConflictError("ledger busy")
        assert SubmissionScheduler(coordinator).run_once() == 0


class TestLifecycle:
    @patch("facturador.services.scheduler.BackgroundScheduler")
    def test_start_registers_interval_job(self, mock_cls):
        scheduler = SubmissionScheduler(_coordinator(interval=30.0))
        scheduler.start()

        instance = mock_cls.return_value
        kwargs = instance.add_job.call_args.kwargs
        assert kwargs["id"] == JOB_ID
        assert kwargs["func"] == scheduler.run_once
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        assert kwargs["trigger"].interval.total_seconds() == 30.0
        instance.start.assert_called_once()
        assert scheduler.running

    @patch("facturador.services.scheduler.BackgroundScheduler")
    def test_start_twice_is_noop(self, mock_cls):
        scheduler = SubmissionScheduler(_coordinator())
        scheduler.start()
        scheduler.start()
        assert mock_cls.call_count == 1

    @patch("facturador.services.scheduler.BackgroundScheduler")
    def test_stop(self, mock_cls):
        scheduler = SubmissionScheduler(_coordinator())
        scheduler.start()
        scheduler.stop(wait=False)
        mock_cls.return_value.shutdown.assert_called_once_with(wait=False)
        assert not scheduler.running
        scheduler.stop()
        mock_cls.return_value.shutdown.assert_called_once()

    def test_explicit_interval_wins(self):
        assert SubmissionScheduler(_coordinator(interval=60.0), interval=5.0).interval == 5.0
