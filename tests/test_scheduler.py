import threading
import time
import unittest
from unittest import mock

from tasksync.models import AppConfig
from tasksync.scheduler import SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def _scheduler(self, auto_sync: bool):
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig.from_dict(
            {"sync": {"enable_auto_sync": auto_sync, "interval_seconds": 3600}}
        )
        ran = threading.Event()
        engine = mock.Mock()
        engine.run_once.side_effect = lambda trigger: ran.set()
        return SyncScheduler(engine, config_manager), engine, ran

    def test_manual_trigger_runs_when_auto_sync_disabled(self) -> None:
        scheduler, engine, ran = self._scheduler(auto_sync=False)
        scheduler.start()
        try:
            self.assertTrue(scheduler.running)
            scheduler.trigger_manual()
            self.assertTrue(ran.wait(timeout=5))
        finally:
            scheduler.stop()
        engine.run_once.assert_called_once_with(trigger="manual")
        self.assertFalse(scheduler.running)

    def test_startup_run_when_auto_sync_enabled(self) -> None:
        scheduler, engine, ran = self._scheduler(auto_sync=True)
        scheduler.start()
        try:
            self.assertTrue(ran.wait(timeout=5))
        finally:
            scheduler.stop()
        self.assertEqual(engine.run_once.call_args_list[0], mock.call(trigger="startup"))

    def test_engine_exception_does_not_kill_loop(self) -> None:
        scheduler, engine, ran = self._scheduler(auto_sync=False)
        calls = []

        def run_once(trigger):
            calls.append(trigger)
            if len(calls) == 1:
                raise RuntimeError("boom")
            ran.set()

        engine.run_once.side_effect = run_once
        scheduler.start()
        try:
            scheduler.trigger_manual()
            for _ in range(100):
                if calls:
                    break
                time.sleep(0.05)
            scheduler.trigger_manual()
            self.assertTrue(ran.wait(timeout=5))
        finally:
            scheduler.stop()
        self.assertEqual(calls, ["manual", "manual"])


if __name__ == "__main__":
    unittest.main()
