"""
Unit Tests for Configuration Management

Test Coverage:
    - Hop list parsing (labels, ordering, blanks)
    - Configuration loading from environment variables
    - Success policy selection (ALL / THRESHOLD)
    - Optional latency threshold handling
    - Configuration validation (ranges, policy, addresses, duplicates)
"""

import os
import unittest
from importlib import reload
from unittest.mock import patch

from . import config as config_module
from .config import Config, parse_targets, validate_configuration, is_valid_address
from .models import PolicyKind, SuccessPolicy, Target


class TestParseTargets(unittest.TestCase):
    """Test parsing of the TARGETS hop list."""

    def test_labels_and_positions(self):
        targets = parse_targets("192.168.1.1=ROUTER,10.4.40.1=CPE/ANTENA,8.8.8.8")
        self.assertEqual(targets, (
            Target("192.168.1.1", "ROUTER", 0),
            Target("10.4.40.1", "CPE/ANTENA", 1),
            Target("8.8.8.8", None, 2),
        ))

    def test_whitespace_and_blank_entries_skipped(self):
        targets = parse_targets(" 1.1.1.1 = DNS , , 9.9.9.9 ,")
        self.assertEqual([t.address for t in targets], ["1.1.1.1", "9.9.9.9"])
        self.assertEqual(targets[0].label, "DNS")
        self.assertEqual(targets[1].position, 1)

    def test_empty_string(self):
        self.assertEqual(parse_targets(""), ())

    def test_display(self):
        self.assertEqual(Target("1.1.1.1", "DNS").display, "1.1.1.1(DNS)")
        self.assertEqual(Target("1.1.1.1").display, "1.1.1.1")


class TestConfigLoading(unittest.TestCase):
    """Test configuration loading from environment variables."""

    def tearDown(self):
        # Restore a Config class built from the untouched environment
        reload(config_module)

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            reload(config_module)
            cfg = config_module.Config()
        self.assertEqual(cfg.ping_interval, 30)
        self.assertEqual(cfg.ping_count, 3)
        self.assertEqual(cfg.ping_timeout, 2)
        self.assertEqual(cfg.latency_threshold_ms, 100)
        self.assertEqual(cfg.event_log_max_bytes, 10 * 1024 * 1024)
        self.assertFalse(cfg.verbose)
        self.assertEqual(cfg.policy, SuccessPolicy.all_required())
        self.assertEqual(len(cfg.targets), 3)

    def test_environment_overrides(self):
        env = {
            'TARGETS': '192.168.1.1=ROUTER,1.1.1.1',
            'PING_INTERVAL_SECONDS': '15',
            'SUCCESS_POLICY': 'threshold',
            'MIN_SUCCESSFUL_TARGETS': '1',
            'LATENCY_THRESHOLD_MS': '250',
            'VERBOSE': 'TRUE',
            'EVENT_LOG_FILE': '/tmp/x/outages.csv',
        }
        with patch.dict(os.environ, env, clear=True):
            reload(config_module)
            cfg = config_module.Config()
        self.assertEqual([t.address for t in cfg.targets], ['192.168.1.1', '1.1.1.1'])
        self.assertEqual(cfg.ping_interval, 15)
        self.assertEqual(cfg.policy, SuccessPolicy.threshold(1))
        self.assertEqual(cfg.latency_threshold_ms, 250)
        self.assertTrue(cfg.verbose)
        self.assertEqual(cfg.event_log_file, '/tmp/x/outages.csv')

    def test_latency_threshold_disabled(self):
        for raw in ('', '0'):
            with self.subTest(raw=raw):
                with patch.dict(os.environ, {'LATENCY_THRESHOLD_MS': raw}, clear=True):
                    reload(config_module)
                    cfg = config_module.Config()
                self.assertIsNone(cfg.latency_threshold_ms)

    def test_config_is_immutable(self):
        cfg = Config(targets_spec="1.1.1.1")
        with self.assertRaises(Exception):
            cfg.ping_interval = 5

    def test_keyword_overrides_reparse_targets(self):
        cfg = Config(targets_spec="10.0.0.1=GW,10.0.0.2")
        self.assertEqual(cfg.targets[0].label, "GW")
        self.assertEqual(cfg.targets[1].position, 1)


class TestSuccessPolicy(unittest.TestCase):

    def test_all_required(self):
        policy = SuccessPolicy.all_required()
        self.assertTrue(policy.is_satisfied(3, 3))
        self.assertFalse(policy.is_satisfied(2, 3))
        self.assertFalse(policy.is_satisfied(0, 0))

    def test_threshold(self):
        policy = SuccessPolicy.threshold(1)
        self.assertEqual(policy.kind, PolicyKind.THRESHOLD)
        self.assertTrue(policy.is_satisfied(1, 3))
        self.assertFalse(policy.is_satisfied(0, 3))
        self.assertEqual(str(policy), "THRESHOLD(1)")


class TestConfigValidation(unittest.TestCase):
    """Test validate_configuration()."""

    def make(self, **overrides):
        base = dict(targets_spec="192.168.1.1=ROUTER,8.8.8.8=DNS", event_log_file="/tmp/e.csv",
                    state_file="/tmp/s", lock_file="/tmp/l", notify_email_to=None, smtp_host=None)
        base.update(overrides)
        return Config(**base)

    def test_valid_configuration(self):
        self.assertEqual(validate_configuration(self.make()), [])

    def test_no_targets(self):
        errors = validate_configuration(self.make(targets_spec=""))
        self.assertTrue(any("at least one" in e for e in errors))

    def test_duplicate_and_invalid_addresses(self):
        errors = validate_configuration(self.make(targets_spec="8.8.8.8,8.8.8.8,bad host!"))
        self.assertTrue(any("Duplicate" in e for e in errors))
        self.assertTrue(any("Invalid target address" in e for e in errors))

    def test_numeric_ranges(self):
        errors = validate_configuration(self.make(ping_interval=0, ping_count=50))
        self.assertTrue(any("PING_INTERVAL_SECONDS" in e for e in errors))
        self.assertTrue(any("PING_COUNT" in e for e in errors))

    def test_unknown_policy(self):
        errors = validate_configuration(self.make(success_policy="MAJORITY"))
        self.assertTrue(any("SUCCESS_POLICY" in e for e in errors))

    def test_threshold_exceeds_targets(self):
        errors = validate_configuration(self.make(success_policy="THRESHOLD", min_successful_targets=3))
        self.assertTrue(any("MIN_SUCCESSFUL_TARGETS" in e for e in errors))

    def test_unknown_backend(self):
        errors = validate_configuration(self.make(probe_backend="scapy"))
        self.assertTrue(any("PROBE_BACKEND" in e for e in errors))

    def test_same_log_and_state_file(self):
        errors = validate_configuration(self.make(state_file="/tmp/e.csv"))
        self.assertTrue(any("must be different" in e for e in errors))

    def test_address_syntax(self):
        self.assertTrue(is_valid_address("192.168.1.1"))
        self.assertTrue(is_valid_address("2001:4860:4860::8888"))
        self.assertTrue(is_valid_address("dns.google"))
        self.assertFalse(is_valid_address("not a host"))
        self.assertFalse(is_valid_address("-bad.example"))


if __name__ == '__main__':
    unittest.main()
