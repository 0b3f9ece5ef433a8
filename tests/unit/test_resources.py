"""Tests for cached, single-flight resolution of the converter and voice catalog."""

import threading
import time
from unittest.mock import MagicMock

import pytest

from speechmaker_backend.errors import (
    ConversionCancelled,
    DeadlineExceeded,
    EngineUnresponsiveError,
    ErrorCategory,
)
from speechmaker_backend.models import ResourceKind, Voice
from speechmaker_backend.resources import (
    DEFAULT_VOICE_TIMEOUT_MS,
    FAST_START_VOICE_TIMEOUT_MS,
    ResourceResolver,
)
from speechmaker_backend.retry import RetryPolicy
from speechmaker_backend.runtime import ConverterProbeResult

VOICES = [Voice(id="en-US-AriaNeural", display_name="Aria", locale="en-US", is_default=True)]


class FakeProbe:
    def __init__(self, bundled=None, system=None, system_error=None, delay=0.0):
        self.bundled = bundled
        self.system = system
        self.system_error = system_error
        self.delay = delay
        self.bundled_calls = 0
        self.system_calls = 0
        self.deadlines = []

    def probe_bundled(self):
        self.bundled_calls += 1
        return self.bundled

    def probe_system(self, deadline):
        self.system_calls += 1
        self.deadlines.append(deadline)
        if self.delay:
            time.sleep(self.delay)
        if self.system_error is not None:
            raise self.system_error
        return self.system


def no_sleep_policy(max_attempts=3):
    return RetryPolicy(max_attempts=max_attempts, sleep=lambda seconds: None)


def build_resolver(classifier, voice_lister=None, probe=None, **kwargs):
    return ResourceResolver(
        voice_lister=voice_lister or (lambda deadline: VOICES),
        classifier=classifier,
        converter_probe=probe or FakeProbe(),
        **kwargs,
    )


@pytest.mark.unit
class TestConverterResolution:
    def test_system_converter_used_when_bundled_missing(self, classifier):
        probe = FakeProbe(system=ConverterProbeResult(path="/usr/bin/ffmpeg", version="6.0"))
        resolver = build_resolver(classifier, probe=probe)

        status = resolver.resolve_converter()

        assert status.kind is ResourceKind.AUDIO_CONVERTER
        assert status.available is True
        assert status.source == "system"
        assert status.path == "/usr/bin/ffmpeg"
        assert status.version == "6.0"
        assert status.detection_latency_ms >= 0
        assert probe.deadlines[0].timeout_ms == 3000

    def test_bundled_converter_skips_system_probe(self, classifier):
        probe = FakeProbe(bundled=ConverterProbeResult(path="/app/resources/ffmpeg", version=None))
        resolver = build_resolver(classifier, probe=probe)

        status = resolver.resolve_converter()

        assert status.available is True
        assert status.source == "bundled"
        assert probe.system_calls == 0

    def test_no_converter_found(self, classifier):
        resolver = build_resolver(classifier, probe=FakeProbe())

        status = resolver.resolve_converter()

        assert status.available is False
        assert status.source == "none"
        assert status.error.category is ErrorCategory.CONVERTER_MISSING

    def test_system_probe_timeout_is_a_definite_unavailable(self, classifier):
        probe = FakeProbe(system_error=DeadlineExceeded("ffmpeg -version timed out", timeout_ms=3000))
        resolver = build_resolver(classifier, probe=probe)

        status = resolver.resolve_converter()

        assert status.available is False
        assert status.source == "none"
        assert status.error.category is ErrorCategory.CONVERTER_MISSING

    def test_result_is_cached_until_cleared(self, classifier):
        probe = FakeProbe(system=ConverterProbeResult(path="/usr/bin/ffmpeg", version="6.0"))
        resolver = build_resolver(classifier, probe=probe)

        first = resolver.resolve_converter()
        second = resolver.resolve_converter()

        assert first is second
        assert probe.system_calls == 1
        assert resolver.cached(ResourceKind.AUDIO_CONVERTER) is first

        resolver.clear()
        assert resolver.cached(ResourceKind.AUDIO_CONVERTER) is None
        resolver.resolve_converter()
        assert probe.system_calls == 2
        assert resolver.probe_count(ResourceKind.AUDIO_CONVERTER) == 2

    def test_refresh_probes_again(self, classifier):
        probe = FakeProbe()
        resolver = build_resolver(classifier, probe=probe)
        resolver.resolve_converter()
        probe.system = ConverterProbeResult(path="/usr/local/bin/ffmpeg", version="7.0")

        status = resolver.refresh(ResourceKind.AUDIO_CONVERTER)

        assert status.available is True
        assert probe.system_calls == 2


@pytest.mark.unit
class TestSingleFlight:
    def test_concurrent_voice_requests_share_one_probe(self, classifier):
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_lister(deadline):
            calls.append(deadline)
            started.set()
            release.wait(5)
            return VOICES

        resolver = build_resolver(classifier, voice_lister=slow_lister)
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def request():
            barrier.wait(5)
            status = resolver.resolve_voices()
            with results_lock:
                results.append(status)

        threads = [threading.Thread(target=request) for _ in range(8)]
        for thread in threads:
            thread.start()
        assert started.wait(5)
        time.sleep(0.1)
        release.set()
        for thread in threads:
            thread.join(5)

        assert len(calls) == 1
        assert resolver.probe_count(ResourceKind.VOICE_CATALOG) == 1
        assert len(results) == 8
        assert all(result is results[0] for result in results)

    def test_concurrent_converter_requests_share_one_probe(self, classifier):
        probe = FakeProbe(
            system=ConverterProbeResult(path="/usr/bin/ffmpeg", version="6.0"),
            delay=0.2,
        )
        resolver = build_resolver(classifier, probe=probe)
        results = []

        threads = [
            threading.Thread(target=lambda: results.append(resolver.resolve_converter()))
            for _ in range(6)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)

        assert probe.system_calls == 1
        assert len(results) == 6
        assert len({id(result) for result in results}) == 1

    def test_clear_during_resolution_discards_the_stale_result(self, classifier):
        stale = [Voice(id="en-GB-RyanNeural", display_name="Ryan", locale="en-GB")]
        started = threading.Event()
        release = threading.Event()
        calls = []

        def lister(deadline):
            calls.append(deadline)
            if len(calls) == 1:
                started.set()
                release.wait(5)
                return stale
            return VOICES

        resolver = build_resolver(classifier, voice_lister=lister)
        published = []
        resolver.add_listener(published.append)
        early = []
        thread = threading.Thread(target=lambda: early.append(resolver.resolve_voices()))
        thread.start()
        assert started.wait(5)

        resolver.clear()
        fresh = resolver.resolve_voices()
        release.set()
        thread.join(5)

        assert [voice.id for voice in early[0].voices] == ["en-GB-RyanNeural"]
        assert resolver.cached(ResourceKind.VOICE_CATALOG) is fresh
        assert resolver.resolve_voices() is fresh
        assert published == [fresh]
        assert resolver.probe_count(ResourceKind.VOICE_CATALOG) == 2

    def test_kinds_are_resolved_independently(self, classifier):
        lister = MagicMock(return_value=VOICES)
        probe = FakeProbe()
        resolver = build_resolver(classifier, voice_lister=lister, probe=probe)

        resolver.resolve_voices()
        resolver.resolve_converter()
        resolver.resolve_voices()

        assert lister.call_count == 1
        assert probe.system_calls == 1


@pytest.mark.unit
class TestVoiceCatalogResolution:
    def test_two_failures_then_success(self, classifier):
        calls = {"count": 0}

        def flaky_lister(deadline):
            calls["count"] += 1
            if calls["count"] < 3:
                raise EngineUnresponsiveError("TTS engine is not responding")
            return VOICES

        resolver = build_resolver(
            classifier,
            voice_lister=flaky_lister,
            retry_policy=no_sleep_policy(3),
        )

        status = resolver.resolve_voices()

        assert status.available is True
        assert status.source == "engine"
        assert status.attempts == 3
        assert [voice.id for voice in status.voices] == ["en-US-AriaNeural"]
        assert status.error is None

    def test_exhaustion_returns_empty_catalog_with_last_error(self, classifier):
        lister = MagicMock(side_effect=EngineUnresponsiveError("TTS engine is not responding"))
        resolver = build_resolver(
            classifier,
            voice_lister=lister,
            retry_policy=no_sleep_policy(3),
        )

        status = resolver.resolve_voices()

        assert status.available is False
        assert status.voices == ()
        assert status.attempts == 3
        assert lister.call_count == 3
        assert status.error.category is ErrorCategory.ENGINE_UNRESPONSIVE
        assert status.error.context["attempt"] == 3

    def test_empty_listing_is_classified_as_no_voices(self, classifier):
        resolver = build_resolver(
            classifier,
            voice_lister=lambda deadline: [],
            retry_policy=no_sleep_policy(2),
        )

        status = resolver.resolve_voices()

        assert status.available is False
        assert status.attempts == 2
        assert status.error.suggested_action == "install_voices"

    def test_non_retryable_failure_stops_immediately(self, classifier):
        lister = MagicMock(side_effect=ConversionCancelled("Conversion was cancelled"))
        resolver = build_resolver(
            classifier,
            voice_lister=lister,
            retry_policy=no_sleep_policy(3),
        )

        status = resolver.resolve_voices()

        assert lister.call_count == 1
        assert status.attempts == 1
        assert status.available is False

    def test_backoff_between_attempts(self, classifier):
        sleeps = []
        lister = MagicMock(side_effect=[EngineUnresponsiveError("not responding"), VOICES])
        resolver = build_resolver(
            classifier,
            voice_lister=lister,
            retry_policy=RetryPolicy(max_attempts=3, sleep=sleeps.append),
        )

        resolver.resolve_voices()

        assert sleeps == [1.0]

    def test_voice_deadline_defaults(self, classifier):
        deadlines = []

        def lister(deadline):
            deadlines.append(deadline)
            return VOICES

        build_resolver(classifier, voice_lister=lister).resolve_voices()
        build_resolver(classifier, voice_lister=lister, fast_start=True).resolve_voices()

        assert deadlines[0].timeout_ms == DEFAULT_VOICE_TIMEOUT_MS
        assert deadlines[1].timeout_ms == FAST_START_VOICE_TIMEOUT_MS

    def test_fast_start_uses_fewer_attempts(self, classifier):
        resolver = build_resolver(classifier, fast_start=True)

        assert resolver.retry_policy.max_attempts == 2

    def test_rejects_single_attempt(self, classifier):
        with pytest.raises(ValueError):
            build_resolver(classifier, voice_attempts=1)


@pytest.mark.unit
class TestResourceListeners:
    def test_listeners_receive_status_and_are_isolated(self, classifier, events):
        resolver = build_resolver(classifier, events=events)
        received = []

        def broken(status):
            raise RuntimeError("listener exploded")

        resolver.add_listener(broken)
        resolver.add_listener(received.append)

        status = resolver.resolve_voices()

        assert received == [status]
        events.warn.assert_called_once()
        events.emit.assert_any_call(
            "resource",
            kind="voice_catalog",
            available=True,
            source="engine",
            latency_ms=status.detection_latency_ms,
        )

    def test_removed_listener_is_not_called(self, classifier):
        resolver = build_resolver(classifier)
        received = []
        remove = resolver.add_listener(received.append)

        remove()
        resolver.resolve_voices()

        assert received == []

    def test_cached_reads_do_not_republish(self, classifier):
        resolver = build_resolver(classifier)
        received = []
        resolver.add_listener(received.append)

        resolver.resolve_voices()
        resolver.resolve_voices()

        assert len(received) == 1
