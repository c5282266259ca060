"""
Unit Tests for the Probe Executor

Test Coverage:
    - Failure classification from ping diagnostic text
    - Latency extraction (Linux / BSD summaries, per-reply fallback, unparsable)
    - PingProber command construction and subprocess handling
      * success, failure, timeout kill, missing binary
      * C locale and undecodable output from a real child process
    - Ping3Prober exception mapping
    - Backend selection
"""

import os
import stat
import subprocess
import tempfile
import types
import unittest
from unittest.mock import MagicMock, patch

from .config import Config
from .models import FailureReason, Target
from .probe import (PingProber, Ping3Prober, build_prober, classify_failure, extract_latency_ms,
                    PROBE_GRACE_SECONDS)

LINUX_OK = """PING 8.8.8.8 (8.8.8.8) 56(84) bytes of data.
64 bytes from 8.8.8.8: icmp_seq=1 ttl=117 time=14.2 ms
64 bytes from 8.8.8.8: icmp_seq=2 ttl=117 time=15.9 ms
64 bytes from 8.8.8.8: icmp_seq=3 ttl=117 time=13.1 ms

--- 8.8.8.8 ping statistics ---
3 packets transmitted, 3 received, 0% packet loss, time 2003ms
rtt min/avg/max/mdev = 13.100/14.400/15.900/1.147 ms
"""

BSD_OK = """PING 1.1.1.1 (1.1.1.1): 56 data bytes
64 bytes from 1.1.1.1: icmp_seq=0 ttl=58 time=21.733 ms

--- 1.1.1.1 ping statistics ---
1 packets transmitted, 1 packets received, 0.0% packet loss
round-trip min/avg/max/stddev = 21.733/21.733/21.733/0.000 ms
"""


class TestClassifyFailure(unittest.TestCase):

    def test_dns_error(self):
        self.assertEqual(classify_failure("ping: nosuchhost: Name or service not known"),
                         FailureReason.DNS_ERROR)
        self.assertEqual(classify_failure("ping: example.invalid: Temporary failure in name resolution"),
                         FailureReason.DNS_ERROR)

    def test_network_unreachable(self):
        self.assertEqual(classify_failure("connect: Network is unreachable"),
                         FailureReason.NETWORK_UNREACHABLE)

    def test_host_unreachable(self):
        text = "From 192.168.1.10 icmp_seq=1 Destination Host Unreachable"
        self.assertEqual(classify_failure(text), FailureReason.HOST_UNREACHABLE)

    def test_no_route(self):
        self.assertEqual(classify_failure("ping: sendmsg: No route to host"), FailureReason.NO_ROUTE)

    def test_case_insensitive(self):
        self.assertEqual(classify_failure("NETWORK IS UNREACHABLE"), FailureReason.NETWORK_UNREACHABLE)

    def test_unrecognised_defaults_to_timeout(self):
        self.assertEqual(classify_failure("3 packets transmitted, 0 received, 100% packet loss"),
                         FailureReason.TIMEOUT)
        self.assertEqual(classify_failure(""), FailureReason.TIMEOUT)
        self.assertEqual(classify_failure(None), FailureReason.TIMEOUT)


class TestExtractLatency(unittest.TestCase):

    def test_linux_summary_average_truncated(self):
        self.assertEqual(extract_latency_ms(LINUX_OK), 14)

    def test_bsd_summary(self):
        self.assertEqual(extract_latency_ms(BSD_OK), 21)

    def test_last_reply_when_no_summary(self):
        text = "64 bytes from x: time=9.9 ms\n64 bytes from x: time=31.7 ms\n"
        self.assertEqual(extract_latency_ms(text), 31)

    def test_sub_millisecond_reply(self):
        self.assertEqual(extract_latency_ms("64 bytes from 10.0.0.1: icmp_seq=1 time<1 ms"), 1)

    def test_unparsable_defaults_to_zero(self):
        self.assertEqual(extract_latency_ms("reply received, no timing"), 0)
        self.assertEqual(extract_latency_ms(""), 0)


class TestPingProber(unittest.TestCase):

    def setUp(self):
        self.prober = PingProber(ping_bin="/bin/ping")
        self.target = Target("8.8.8.8", "DNS")

    def completed(self, returncode, stdout):
        return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout)

    def test_command(self):
        self.assertEqual(self.prober.build_command("8.8.8.8", 3, 2),
                         ["/bin/ping", "-n", "-c", "3", "-W", "2", "8.8.8.8"])

    def test_success(self):
        with patch("subprocess.run", return_value=self.completed(0, LINUX_OK)) as run:
            outcome = self.prober.probe(self.target, 3, 2)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.latency_ms, 14)
        self.assertIsNone(outcome.reason)
        self.assertEqual(run.call_args.kwargs["timeout"], 3 * 2 + PROBE_GRACE_SECONDS)

    def test_success_without_latency_text(self):
        with patch("subprocess.run", return_value=self.completed(0, "ok")):
            outcome = self.prober.probe(self.target, 1, 1)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.latency_ms, 0)

    def test_failure_classified(self):
        output = "ping: unknown.invalid: Name or service not known\n"
        with patch("subprocess.run", return_value=self.completed(2, output)):
            outcome = self.prober.probe(Target("unknown.invalid"), 1, 1)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.reason, FailureReason.DNS_ERROR)
        self.assertIn("Name or service not known", outcome.detail)

    def test_no_reply_is_timeout(self):
        output = "--- 10.4.40.1 ping statistics ---\n3 packets transmitted, 0 received, 100% packet loss\n"
        with patch("subprocess.run", return_value=self.completed(1, output)):
            outcome = self.prober.probe(self.target, 3, 2)
        self.assertEqual(outcome.reason, FailureReason.TIMEOUT)

    def test_hung_process_killed_and_reported_as_timeout(self):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(cmd="ping", timeout=8)):
            outcome = self.prober.probe(self.target, 3, 2)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.reason, FailureReason.TIMEOUT)

    def test_missing_binary_is_unknown(self):
        with patch("subprocess.run", side_effect=FileNotFoundError("no ping")):
            outcome = self.prober.probe(self.target, 3, 2)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.reason, FailureReason.UNKNOWN)

    def test_runs_in_c_locale_with_lossy_decoding(self):
        with patch("subprocess.run", return_value=self.completed(0, LINUX_OK)) as run:
            self.prober.probe(self.target, 1, 1)
        self.assertEqual(run.call_args.kwargs["env"]["LC_ALL"], "C")
        self.assertEqual(run.call_args.kwargs["errors"], "replace")


class TestPingProberSubprocess(unittest.TestCase):
    """Runs PingProber against a stand-in ping script."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def fake_ping(self, body):
        path = os.path.join(self.tmp.name, "ping")
        with open(path, "w") as f:
            f.write("#!/bin/sh\n" + body + "\n")
        os.chmod(path, os.stat(path).st_mode | stat.S_IXUSR)
        return PingProber(ping_bin=path)

    def test_undecodable_output_is_classified(self):
        prober = self.fake_ping("printf 'ping: h\\351te: Name or service not known\\n'\nexit 2")
        outcome = prober.probe(Target("héte.example"), 1, 1)
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.reason, FailureReason.DNS_ERROR)
        self.assertIn("Name or service not known", outcome.detail)

    def test_locale_forced_for_child(self):
        prober = self.fake_ping('echo "locale=$LC_ALL"\nexit 1')
        with patch.dict(os.environ, {"LC_ALL": "de_DE.UTF-8"}):
            outcome = prober.probe(Target("10.0.0.1"), 1, 1)
        self.assertEqual(outcome.reason, FailureReason.TIMEOUT)
        self.assertEqual(outcome.detail, "locale=C")


class FakePing3Errors:
    class PingError(Exception):
        pass

    class HostUnknown(PingError):
        pass

    class DestinationUnreachable(PingError):
        pass

    class DestinationHostUnreachable(DestinationUnreachable):
        pass

    class Timeout(PingError):
        pass


class TestPing3Prober(unittest.TestCase):

    def make(self, ping_func):
        prober = Ping3Prober.__new__(Ping3Prober)
        prober._ping = ping_func
        prober._errors = FakePing3Errors
        return prober

    def test_average_of_replies(self):
        replies = iter([10.9, None, 21.4])
        prober = self.make(lambda *a, **k: next(replies))
        outcome = prober.probe(Target("1.1.1.1"), 3, 1)
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.latency_ms, 16)

    def test_exception_mapping(self):
        cases = [
            (FakePing3Errors.HostUnknown("x"), FailureReason.DNS_ERROR),
            (FakePing3Errors.DestinationHostUnreachable("x"), FailureReason.HOST_UNREACHABLE),
            (FakePing3Errors.DestinationUnreachable("x"), FailureReason.NETWORK_UNREACHABLE),
            (FakePing3Errors.Timeout("x"), FailureReason.TIMEOUT),
            (FakePing3Errors.PingError("x"), FailureReason.UNKNOWN),
        ]
        for exc, reason in cases:
            with self.subTest(exc=type(exc).__name__):
                def raise_it(*a, **k):
                    raise exc
                outcome = self.make(raise_it).probe(Target("host.example"), 2, 1)
                self.assertFalse(outcome.success)
                self.assertEqual(outcome.reason, reason)

    def test_no_reply_without_error(self):
        outcome = self.make(lambda *a, **k: None).probe(Target("1.1.1.1"), 2, 1)
        self.assertEqual(outcome.reason, FailureReason.TIMEOUT)


class TestBuildProber(unittest.TestCase):

    def test_default_backend_is_ping(self):
        self.assertIsInstance(build_prober(Config(probe_backend="ping")), PingProber)

    def test_ping3_backend(self):
        fake_ping3 = types.ModuleType("ping3")
        fake_ping3.ping = MagicMock()
        fake_ping3.errors = FakePing3Errors
        with patch.dict("sys.modules", {"ping3": fake_ping3, "ping3.errors": FakePing3Errors}):
            prober = build_prober(Config(probe_backend="ping3"))
        self.assertIsInstance(prober, Ping3Prober)
        self.assertTrue(fake_ping3.EXCEPTIONS)


if __name__ == '__main__':
    unittest.main()
