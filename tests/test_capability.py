"""Tests for the memoizing capability resolver."""

import asyncio
import threading
import time

from core.capability import CapabilityResolver
from core.errors import CapabilityUnavailable
from core.progress import FALLBACK_READY_LABEL, MODEL_READY_LABEL
from core.transforms import ProcessingStrategy


def test_successful_probe_selects_accelerated(counting_probe, fake_backend):
    backend = fake_backend()
    resolver = CapabilityResolver(counting_probe(backend=backend))
    labels = []

    strategy = asyncio.run(resolver.resolve(on_status=labels.append))

    assert strategy == ProcessingStrategy.ACCELERATED
    assert resolver.backend is backend
    assert labels == [MODEL_READY_LABEL]
    assert resolver.downgrades == []


def test_probe_failure_degrades_without_raising(counting_probe):
    seen = []
    probe = counting_probe(error=CapabilityUnavailable("no GPU"))
    resolver = CapabilityResolver(probe, on_downgrade=seen.append)
    labels = []

    strategy = asyncio.run(resolver.resolve(on_status=labels.append))

    assert strategy == ProcessingStrategy.FALLBACK
    assert resolver.backend is None
    assert labels == [FALLBACK_READY_LABEL]
    assert len(resolver.downgrades) == 1
    assert resolver.downgrades[0].stage == "initializing"
    assert "no GPU" in resolver.downgrades[0].reason
    assert seen == resolver.downgrades


def test_unexpected_probe_exception_degrades(counting_probe):
    resolver = CapabilityResolver(counting_probe(error=OSError("driver crashed")))
    assert asyncio.run(resolver.resolve()) == ProcessingStrategy.FALLBACK
    assert "OSError" in resolver.downgrades[0].reason


def test_resolution_is_memoized(counting_probe):
    probe = counting_probe(error=CapabilityUnavailable("no GPU"))
    resolver = CapabilityResolver(probe)

    async def resolve_many():
        return [await resolver.resolve() for _ in range(3)]

    assert asyncio.run(resolve_many()) == [ProcessingStrategy.FALLBACK] * 3
    assert probe.calls == 1
    assert resolver.probe_count == 1
    assert len(resolver.downgrades) == 1


def test_probe_timeout_degrades():
    def slow_probe():
        time.sleep(0.3)
        return object()

    resolver = CapabilityResolver(slow_probe, timeout=0.01)
    assert asyncio.run(resolver.resolve()) == ProcessingStrategy.FALLBACK
    assert "did not initialize" in resolver.downgrades[0].reason


def test_disabled_probe_uses_fallback_without_downgrade():
    resolver = CapabilityResolver(None)
    assert asyncio.run(resolver.resolve()) == ProcessingStrategy.FALLBACK
    assert resolver.downgrades == []
    assert resolver.probe_count == 0


def test_downgrade_is_permanent(counting_probe, fake_backend):
    resolver = CapabilityResolver(counting_probe(backend=fake_backend()))
    asyncio.run(resolver.resolve())

    resolver.downgrade("execution failed", stage="transforming")

    assert resolver.strategy == ProcessingStrategy.FALLBACK
    assert resolver.backend is None
    assert asyncio.run(resolver.resolve()) == ProcessingStrategy.FALLBACK
    assert resolver.probe_count == 1


def test_timeout_returns_without_waiting_for_backend():
    release = threading.Event()

    def stuck_loader():
        release.wait(timeout=5)
        return object()

    resolver = CapabilityResolver(stuck_loader, timeout=0.05)
    started = time.monotonic()
    try:
        assert asyncio.run(resolver.resolve()) == ProcessingStrategy.FALLBACK
        assert time.monotonic() - started < 1.0
    finally:
        release.set()


def test_backend_arriving_after_timeout_is_closed():
    release = threading.Event()
    closed = threading.Event()

    class LateBackend:
        def process(self, buffer):
            return buffer

        def close(self):
            closed.set()

    def late_loader():
        release.wait(timeout=5)
        return LateBackend()

    resolver = CapabilityResolver(late_loader, timeout=0.05)
    assert asyncio.run(resolver.resolve()) == ProcessingStrategy.FALLBACK

    release.set()
    assert closed.wait(timeout=2)
    assert resolver.backend is None
    assert resolver.strategy == ProcessingStrategy.FALLBACK
