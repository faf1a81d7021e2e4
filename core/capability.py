"""
Dehazing - Capability Resolver
===============================
Decides once per pipeline whether the accelerated backend can be used.

Acquisition failures never propagate: they are logged, recorded as a
StrategyDowngrade and the resolver settles on the fallback strategy for
the rest of its lifetime.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, List, Optional

from core.errors import CapabilityUnavailable
from core.progress import FALLBACK_READY_LABEL, MODEL_READY_LABEL
from core.transforms import AcceleratedBackend, ProcessingStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StrategyDowngrade:
    """Observable record of a switch from accelerated to fallback."""
    reason: str
    stage: str
    error: Optional[BaseException] = None


BackendProbe = Callable[[], AcceleratedBackend]
DowngradeCallback = Callable[[StrategyDowngrade], None]


class CapabilityResolver:
    """
    Memoizing resolver for the processing strategy.

    Args:
        probe: Blocking callable returning an accelerated backend, raising on
            failure (None disables acceleration)
        timeout: Seconds to wait for the probe
        on_downgrade: Called with every downgrade record
    """

    def __init__(
        self,
        probe: Optional[BackendProbe],
        timeout: float = 30.0,
        on_downgrade: Optional[DowngradeCallback] = None
    ):
        self.probe = probe
        self.timeout = timeout
        self.on_downgrade = on_downgrade

        self.strategy: Optional[ProcessingStrategy] = None
        self.backend: Optional[AcceleratedBackend] = None
        self.downgrades: List[StrategyDowngrade] = []
        self.probe_count = 0

        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop = None

    @property
    def resolved(self) -> bool:
        return self.strategy is not None

    def _resolution_lock(self) -> asyncio.Lock:
        # asyncio locks bind to the loop they first wait on; run_sync uses a fresh loop per call
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def resolve(self, on_status: Optional[Callable[[str], None]] = None) -> ProcessingStrategy:
        """
        Return the cached strategy, probing the backend on first use.

        Concurrent callers share a single probe.

        Args:
            on_status: Receives a readiness label when a probe completes
        """
        if self.strategy is not None:
            return self.strategy

        async with self._resolution_lock():
            if self.strategy is not None:
                return self.strategy

            if self.probe is None:
                logger.info("[AI Backend] Acceleration disabled, using fallback transform")
                self.strategy = ProcessingStrategy.FALLBACK
            else:
                await self._acquire()

        if on_status is not None:
            if self.strategy == ProcessingStrategy.ACCELERATED:
                on_status(MODEL_READY_LABEL)
            else:
                on_status(FALLBACK_READY_LABEL)

        return self.strategy

    async def _acquire(self) -> None:
        self.probe_count += 1
        pending = self._start_probe()

        try:
            backend = await asyncio.wait_for(asyncio.wrap_future(pending), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            pending.add_done_callback(_close_late_backend)
            self.downgrade(
                f"accelerated backend did not initialize within {self.timeout:g}s",
                stage="initializing",
                error=e
            )
        except Exception as e:
            reason = str(e) if isinstance(e, CapabilityUnavailable) else f"{type(e).__name__}: {e}"
            self.downgrade(reason, stage="initializing", error=e)
        else:
            self.backend = backend
            self.strategy = ProcessingStrategy.ACCELERATED

    def _start_probe(self) -> Future:
        """Run the probe on a daemon thread so a hung driver cannot hold up shutdown."""
        pending = Future()
        pending.set_running_or_notify_cancel()

        def target():
            try:
                pending.set_result(self.probe())
            except BaseException as e:
                pending.set_exception(e)

        threading.Thread(target=target, name="backend-probe", daemon=True).start()
        return pending

    def downgrade(self, reason: str, stage: str, error: Optional[BaseException] = None) -> StrategyDowngrade:
        """Permanently switch to the fallback strategy."""
        event = StrategyDowngrade(reason=reason, stage=stage, error=error)

        self.strategy = ProcessingStrategy.FALLBACK
        self.backend = None
        self.downgrades.append(event)

        logger.warning("[AI Backend] Accelerated path unavailable (%s): %s; using fallback", stage, reason)
        if self.on_downgrade is not None:
            self.on_downgrade(event)

        return event


def _close_late_backend(pending: Future) -> None:
    if pending.exception() is not None:
        return
    backend = pending.result()
    close = getattr(backend, "close", None)
    if close is not None:
        logger.info("[AI Backend] Closing backend that finished after the timeout")
        close()
