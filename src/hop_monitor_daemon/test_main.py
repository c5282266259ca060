"""
Unit Tests for the Command-Line Entry Point

Test Coverage:
    - Process exit codes for each startup / run outcome
      * graceful shutdown -> 0
      * lock held -> 3
      * invalid configuration -> 1
      * keyboard interrupt -> 130
      * unexpected exception -> 1
      * run() reporting a fatal loop error -> 1
    - The scheduler is stopped on every path that built one
"""

import unittest
from unittest.mock import Mock, patch

from . import __main__ as main_module
from .daemon import EXIT_FATAL, EXIT_LOCK_HELD, EXIT_OK, ConfigurationError
from .lockfile import LockHeldError


class TestMainExitCodes(unittest.TestCase):

    def setUp(self):
        self.logger = Mock(handlers=[Mock()])
        self.scheduler = Mock()
        self.scheduler.run.return_value = EXIT_OK
        patches = [
            patch.object(main_module, "Config"),
            patch.object(main_module, "setup_logger", return_value=self.logger),
            patch.object(main_module, "startup", return_value=self.scheduler),
        ]
        mocks = [p.start() for p in patches]
        for p in patches:
            self.addCleanup(p.stop)
        self.startup = mocks[2]

    def exit_code(self):
        with self.assertRaises(SystemExit) as ctx:
            main_module.main()
        return ctx.exception.code

    def test_graceful_shutdown(self):
        self.assertEqual(self.exit_code(), 0)
        self.scheduler.stop.assert_called_once()
        self.logger.handlers[0].flush.assert_called_once()

    def test_lock_held(self):
        self.startup.side_effect = LockHeldError("/run/hop-monitor.lock", 4242)
        self.assertEqual(self.exit_code(), EXIT_LOCK_HELD)
        self.scheduler.stop.assert_not_called()
        self.assertIn("4242", self.logger.error.call_args.args[0])

    def test_invalid_configuration(self):
        self.startup.side_effect = ConfigurationError(["COUNT must be >= 1"])
        self.assertEqual(self.exit_code(), EXIT_FATAL)
        self.logger.critical.assert_called_once()

    def test_keyboard_interrupt_during_run_stops_scheduler(self):
        self.scheduler.run.side_effect = KeyboardInterrupt
        self.assertEqual(self.exit_code(), 130)
        self.scheduler.stop.assert_called_once()

    def test_unexpected_error_stops_scheduler(self):
        self.scheduler.run.side_effect = RuntimeError("boom")
        self.assertEqual(self.exit_code(), EXIT_FATAL)
        self.scheduler.stop.assert_called_once()

    def test_fatal_loop_result_propagates(self):
        self.scheduler.run.return_value = EXIT_FATAL
        self.assertEqual(self.exit_code(), EXIT_FATAL)
        self.scheduler.stop.assert_called_once()

    def test_flush_failure_does_not_change_exit_code(self):
        self.logger.handlers[0].flush.side_effect = OSError("disk gone")
        self.assertEqual(self.exit_code(), 0)


if __name__ == '__main__':
    unittest.main()
