import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Set, Tuple

from app.services.subscriptions import Subscription
from app.services.view_cache import QueryCache, QueryKey, view_cache

logger = logging.getLogger(__name__)

DEFAULT_REFETCH_DELAYS: Tuple[float, ...] = (0.5, 1.5, 3.0)

# Returns human-readable mismatches between the stored record and the expected post-mutation state.
Verifier = Callable[[], List[str]]


def _parse_delays_env(name: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        delays = tuple(int(item.strip()) / 1000.0 for item in raw.split(",") if item.strip())
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
    if not delays or any(delay < 0 for delay in delays):
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default
    return tuple(sorted(delays))


@dataclass(frozen=True)
class ConvergencePolicy:
    delays: Tuple[float, ...] = DEFAULT_REFETCH_DELAYS
    verify_grace: float = 0.0

    @classmethod
    def from_env(cls) -> "ConvergencePolicy":
        return cls(delays=_parse_delays_env("SYNC_REFETCH_DELAYS_MS", DEFAULT_REFETCH_DELAYS))


@dataclass(eq=False)
class SyncRun:
    label: str
    scopes: Tuple[QueryKey, ...]
    attempts: int = 0
    failures: int = 0
    mismatches: List[str] = field(default_factory=list)
    verified: Optional[bool] = None
    cancelled: bool = False
    _driver: Optional["asyncio.Task[None]"] = None
    _ladder: List["asyncio.Task[None]"] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self._driver is None or self._driver.done()

    def cancel(self) -> None:
        if self.done:
            return
        self.cancelled = True
        for task in self._ladder:
            task.cancel()
        if self._driver is not None:
            self._driver.cancel()

    async def wait(self) -> None:
        if self._driver is not None:
            await asyncio.gather(self._driver, return_exceptions=True)


class ConsistencySynchronizer:
    """Post-mutation convergence: invalidate, refetch now, refetch on a delay ladder, then verify.

    Best-effort only. Nothing here changes the outcome of the mutation that triggered it.
    Pending runs end when their ladder finishes, when an owning Subscription passed to
    converge() is closed, or on shutdown(). The HTTP app dispatches runs without an
    owner, so the lifespan hook's shutdown() is its only cancellation path.
    """

    def __init__(self, cache: QueryCache, policy: Optional[ConvergencePolicy] = None) -> None:
        self.cache = cache
        self.policy = policy or ConvergencePolicy.from_env()
        self._runs: Set[SyncRun] = set()

    @property
    def active_runs(self) -> int:
        return sum(1 for run in self._runs if not run.done)

    async def converge(
        self,
        label: str,
        scopes: Iterable[QueryKey],
        verify: Optional[Verifier] = None,
        owner: Optional[Subscription] = None,
    ) -> SyncRun:
        run = SyncRun(label=label, scopes=tuple(scopes))
        for scope in run.scopes:
            self.cache.invalidate(scope)
        self._refetch(run, rung="immediate")

        loop = asyncio.get_running_loop()
        run._ladder = [loop.create_task(self._delayed_refetch(run, delay)) for delay in self.policy.delays]
        run._driver = loop.create_task(self._drive(run, verify))
        self._runs.add(run)
        run._driver.add_done_callback(lambda _task: self._runs.discard(run))
        if owner is not None:
            owner.add_close_callback(run.cancel)
        logger.info("Sync run dispatched: %s scopes=%s ladder=%s", label, list(run.scopes), list(self.policy.delays))
        return run

    def _refetch(self, run: SyncRun, rung: str) -> None:
        run.attempts += 1
        for scope in run.scopes:
            try:
                _refreshed, failed = self.cache.refetch(scope)
            except Exception:
                logger.exception("Sync %s: %s refetch of %s failed", run.label, rung, scope)
                run.failures += 1
                continue
            run.failures += failed

    async def _delayed_refetch(self, run: SyncRun, delay: float) -> None:
        await asyncio.sleep(delay)
        self._refetch(run, rung=f"+{delay:g}s")

    async def _drive(self, run: SyncRun, verify: Optional[Verifier]) -> None:
        await asyncio.gather(*run._ladder, return_exceptions=True)
        if verify is None:
            return
        if self.policy.verify_grace:
            await asyncio.sleep(self.policy.verify_grace)
        try:
            mismatches = verify()
        except Exception:
            logger.exception("Sync %s: verification read failed", run.label)
            run.verified = None
            return
        run.mismatches = list(mismatches)
        run.verified = not run.mismatches
        if run.mismatches:
            logger.warning("Sync %s: verification mismatch: %s", run.label, "; ".join(run.mismatches))
            self._refetch(run, rung="repair")

    async def wait_idle(self) -> None:
        while True:
            pending = [run for run in self._runs if not run.done]
            if not pending:
                return
            await asyncio.gather(*(run.wait() for run in pending))

    def shutdown(self) -> int:
        """Cancel every pending run; returns how many were still in flight."""
        pending = [run for run in self._runs if not run.done]
        for run in pending:
            run.cancel()
        self._runs.clear()
        if pending:
            logger.info("Cancelled %d pending sync runs", len(pending))
        return len(pending)


synchronizer = ConsistencySynchronizer(view_cache)
