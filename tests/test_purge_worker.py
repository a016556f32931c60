from datetime import timedelta
from unittest import mock

from civic_identity.core.timezone import utc_now
from civic_identity.workers import purge_worker


def test_run_once_purges_expired(session_factory, store, storage):
    store.create("user-old", "old@example.com", now=utc_now() - timedelta(hours=80))
    store.create("user-new", "new@example.com")

    assert purge_worker.run_once(session_factory=session_factory, storage=storage) == 1
    assert purge_worker.run_once(session_factory=session_factory, storage=storage) == 0


def test_cli_runs_single_pass_by_default():
    with mock.patch.object(purge_worker, "run_once", return_value=3) as run_once, \
            mock.patch.object(purge_worker, "worker_loop") as worker_loop:
        purge_worker.run_worker([])

    run_once.assert_called_once_with()
    worker_loop.assert_not_called()


def test_cli_loop_mode():
    with mock.patch.object(purge_worker, "worker_loop") as worker_loop:
        purge_worker.run_worker(["--loop", "--interval", "60"])

    worker_loop.assert_called_once_with(60)
