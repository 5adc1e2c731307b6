"""Tests for the bounded readiness probes."""

from __future__ import annotations

import asyncio

import pytest

from conftest import ConnectionRecorder, FakeCloudProvider, SleepRecorder
from devbox.errors import AuthenticationError, InstanceNotFoundError, ProviderError, TransportError
from devbox.providers.base import InstanceRef, InstanceStatus
from devbox.readiness import ReadinessProber

REF = InstanceRef("demo-project", "us-central1-a", "box1")


def make_prober(provider, connections=None):
    sleeps = SleepRecorder()
    prober = ReadinessProber(
        provider,
        sleep=sleeps,
        open_connection=connections or ConnectionRecorder(),
    )
    return prober, sleeps


class TestWaitForRunning:
    def test_returns_on_running(self):
        provider = FakeCloudProvider(("PROVISIONING", "STAGING", "RUNNING"))
        prober, sleeps = make_prober(provider)

        result = asyncio.run(prober.wait_for_running(REF, max_attempts=10, interval=5.0))

        assert result
        assert result.attempts == 3
        assert result.info.status is InstanceStatus.RUNNING
        assert result.info.public_address == "203.0.113.10"
        assert provider.get_calls == 3
        assert sleeps.delays == [5.0, 5.0]

    def test_exhaustion_returns_not_ready(self):
        provider = FakeCloudProvider(("PROVISIONING",))
        prober, sleeps = make_prober(provider)

        result = asyncio.run(prober.wait_for_running(REF, max_attempts=4, interval=1.0))

        assert not result
        assert result.attempts == 4
        assert provider.get_calls == 4
        # No sleep after the final attempt.
        assert len(sleeps.delays) == 3

    def test_transient_errors_are_retried(self):
        provider = FakeCloudProvider(
            (TransportError("reset"), ProviderError("503", status_code=503), "RUNNING")
        )
        prober, _ = make_prober(provider)

        result = asyncio.run(prober.wait_for_running(REF, max_attempts=5, interval=0))

        assert result
        assert result.attempts == 3

    @pytest.mark.parametrize(
        "error",
        [InstanceNotFoundError("gone", status_code=404), AuthenticationError("denied", status_code=403)],
    )
    def test_fatal_errors_propagate(self, error):
        provider = FakeCloudProvider((error, "RUNNING"))
        prober, _ = make_prober(provider)

        with pytest.raises(type(error)):
            asyncio.run(prober.wait_for_running(REF, max_attempts=5, interval=0))
        assert provider.get_calls == 1


class TestWaitForSshReachable:
    def test_first_probe_succeeds(self):
        connections = ConnectionRecorder()
        prober, sleeps = make_prober(FakeCloudProvider(), connections)

        result = asyncio.run(prober.wait_for_ssh_reachable("203.0.113.10"))

        assert result
        assert result.attempts == 1
        assert connections.calls == [("203.0.113.10", 22)]
        assert sleeps.delays == []

    def test_retries_refused_connections(self):
        connections = ConnectionRecorder(failures=2)
        prober, sleeps = make_prober(FakeCloudProvider(), connections)

        result = asyncio.run(
            prober.wait_for_ssh_reachable("203.0.113.10", 2222, max_attempts=5, interval=2.0)
        )

        assert result.attempts == 3
        assert connections.calls[-1] == ("203.0.113.10", 2222)
        assert sleeps.delays == [2.0, 2.0]

    def test_exhaustion_is_not_an_error(self):
        connections = ConnectionRecorder(failures=100)
        prober, _ = make_prober(FakeCloudProvider(), connections)

        result = asyncio.run(prober.wait_for_ssh_reachable("203.0.113.10", max_attempts=3))

        assert not result
        assert result.attempts == 3
        assert len(connections.calls) == 3

    def test_connect_timeout_counts_as_failed_probe(self):
        async def hang(host, port):
            await asyncio.sleep(10)

        prober = ReadinessProber(FakeCloudProvider(), sleep=SleepRecorder(), open_connection=hang)

        result = asyncio.run(
            prober.wait_for_ssh_reachable("203.0.113.10", max_attempts=2, connect_timeout=0.05)
        )

        assert not result
        assert result.attempts == 2
