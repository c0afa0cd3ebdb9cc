from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from decimal import Decimal

from stockcast.config import AppConfig
from stockcast.data.price_source import PriceSource
from stockcast.errors import TransientSourceError, UnknownInstrumentError
from stockcast.lifecycle.judging import judge
from stockcast.lifecycle.notifications import NotificationDispatcher
from stockcast.lifecycle.reputation import ReputationEngine
from stockcast.models.lifecycle import PredictionStatus, validate_transition
from stockcast.models.prediction import Prediction
from stockcast.registry.queries import Registry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class TickResult:
    due: int = 0
    evaluated: int = 0
    skipped: int = 0
    lost_races: int = 0
    reputation_applied: int = 0
    notifications_emitted: int = 0
    reconciled: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class EvaluationScheduler:
    """Finds due predictions, resolves prices, and commits judgments.

    Safe to run in several processes at once: ``find_due`` hands out leased,
    disjoint batches and ``commit_evaluation`` lets exactly one caller win.
    Reputation and notification effects follow a winning commit and are
    idempotent per prediction id, so ``reconcile`` can retry them freely.
    """

    def __init__(
        self,
        registry: Registry,
        price_source: PriceSource,
        reputation: ReputationEngine,
        dispatcher: NotificationDispatcher,
        *,
        batch_size: int = 500,
        max_workers: int = 8,
        price_timeout: float = 5.0,
        lease_seconds: int = 120,
        interval_seconds: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._price_source = price_source
        self._reputation = reputation
        self._dispatcher = dispatcher
        self._batch_size = batch_size
        self._max_workers = max(1, max_workers)
        self._price_timeout = price_timeout
        self._lease_seconds = lease_seconds
        self.interval_seconds = interval_seconds
        self._clock = clock
        # Lookups abandoned after timing out, still running in their thread.
        self._stuck: dict[str, Future] = {}
        self._stuck_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        registry: Registry,
        price_source: PriceSource,
        reputation: ReputationEngine,
        dispatcher: NotificationDispatcher,
    ) -> EvaluationScheduler:
        return cls(
            registry,
            price_source,
            reputation,
            dispatcher,
            batch_size=config.evaluation_batch_size,
            max_workers=config.evaluation_workers,
            price_timeout=config.price_timeout_seconds,
            lease_seconds=config.claim_lease_seconds,
            interval_seconds=config.evaluation_interval_seconds,
        )

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    def run_once(self, now: datetime | None = None) -> TickResult:
        now = now or self._clock()
        result = TickResult()

        due = self._registry.find_due(now, self._batch_size, self._lease_seconds)
        result.due = len(due)

        if due:
            prices = self._resolve_prices(sorted({p.instrument_id for p in due}))
            unresolved: list[int] = []

            for prediction in due:
                actual_price = prices.get(prediction.instrument_id)
                if actual_price is None:
                    result.skipped += 1
                    unresolved.append(prediction.id)
                    continue
                try:
                    committed = self.evaluate(prediction, actual_price, self._clock())
                except Exception:
                    logger.exception("Failed to evaluate prediction %s", prediction.id)
                    result.skipped += 1
                    unresolved.append(prediction.id)
                    continue

                if committed is None:
                    result.lost_races += 1
                    continue

                result.evaluated += 1
                applied, emitted = self.finalize(committed)
                result.reputation_applied += int(applied)
                result.notifications_emitted += int(emitted)

            if unresolved:
                try:
                    self._registry.release_claims(unresolved)
                except Exception:
                    # Leases expire on their own.
                    logger.warning("Could not release %d claims", len(unresolved), exc_info=True)

        result.reconciled = self.reconcile()

        if result.due or result.reconciled:
            logger.info(
                "Evaluation tick: %d due, %d evaluated, %d skipped, %d lost, %d reconciled",
                result.due, result.evaluated, result.skipped, result.lost_races, result.reconciled,
            )
        return result

    def evaluate(
        self, prediction: Prediction, actual_price: Decimal, evaluated_at: datetime
    ) -> Prediction | None:
        """Judge and commit one prediction.

        Returns the evaluated prediction, or None when another evaluator
        already committed it. Effects are left to ``finalize``.
        """
        if not validate_transition(prediction.status, PredictionStatus.EVALUATED):
            logger.debug("Prediction %s is not pending, nothing to evaluate", prediction.id)
            return None

        is_correct = judge(prediction, actual_price)
        committed = self._registry.commit_evaluation(
            prediction.id, actual_price, is_correct, evaluated_at
        )
        if committed is None:
            logger.debug("Prediction %s already evaluated elsewhere", prediction.id)
            return None

        logger.info(
            "Evaluated prediction %d (%s %s on %s): initial %s, actual %s -> %s",
            committed.id,
            committed.kind.value,
            committed.direction.value if committed.direction else committed.target_price,
            committed.instrument_id,
            committed.initial_price,
            actual_price,
            "correct" if is_correct else "incorrect",
        )
        return committed

    def finalize(self, prediction: Prediction) -> tuple[bool, bool]:
        """Apply reputation and emit the outcome event; failures are left for reconcile."""
        applied = emitted = False
        try:
            applied = self._reputation.apply(prediction)
        except Exception:
            logger.exception("Reputation update failed for prediction %s", prediction.id)
        try:
            emitted = self._dispatcher.emit(prediction)
        except Exception:
            logger.exception("Outcome notification failed for prediction %s", prediction.id)
        return applied, emitted

    def reconcile(self, limit: int | None = None) -> int:
        """Re-apply missing reputation or notification effects for evaluated predictions."""
        limit = limit or self._batch_size
        repaired = 0

        for prediction in self._registry.find_unapplied_reputation(limit):
            try:
                if self._reputation.apply(prediction):
                    repaired += 1
            except Exception:
                logger.exception("Reconcile: reputation failed for prediction %s", prediction.id)

        for prediction in self._registry.find_unnotified(limit):
            try:
                if self._dispatcher.emit(prediction):
                    repaired += 1
            except Exception:
                logger.exception("Reconcile: notification failed for prediction %s", prediction.id)

        return repaired

    # ------------------------------------------------------------------
    # Price resolution
    # ------------------------------------------------------------------

    def _resolve_prices(self, instrument_ids: list[str]) -> dict[str, Decimal]:
        """Look up each instrument concurrently; failures and timeouts are left out.

        At most ``max_workers`` lookups run at once. Each one gets its own
        ``price_timeout`` measured from when it starts; a lookup that overruns
        is abandoned and its slot goes to the next instrument. An instrument
        whose abandoned lookup is still running is not queried again until
        that lookup returns.
        """
        prices: dict[str, Decimal] = {}
        with self._stuck_lock:
            self._stuck = {i: f for i, f in self._stuck.items() if not f.done()}
            stuck = set(self._stuck)
        todo = deque(i for i in instrument_ids if i not in stuck)
        if stuck & set(instrument_ids):
            logger.warning(
                "Skipping %s: previous lookup still running",
                ", ".join(sorted(stuck & set(instrument_ids))),
            )
        if not todo:
            return prices

        # One thread per lookup at most, so a submitted lookup starts immediately.
        executor = ThreadPoolExecutor(max_workers=len(todo), thread_name_prefix="price")
        running: dict[Future, tuple[str, float]] = {}
        try:
            while todo or running:
                while todo and len(running) < self._max_workers:
                    inst = todo.popleft()
                    future = executor.submit(self._price_source.current_price, inst)
                    running[future] = (inst, time.monotonic() + self._price_timeout)

                next_deadline = min(deadline for _, deadline in running.values())
                done, _ = wait(
                    running,
                    timeout=max(0.0, next_deadline - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    inst, _ = running.pop(future)
                    price = self._price_from(inst, future)
                    if price is not None:
                        prices[inst] = price

                now = time.monotonic()
                for future, (inst, deadline) in list(running.items()):
                    if deadline <= now and not future.done():
                        del running[future]
                        with self._stuck_lock:
                            self._stuck[inst] = future
                        logger.warning(
                            "Price lookup for %s timed out after %.1fs", inst, self._price_timeout
                        )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return prices

    @staticmethod
    def _price_from(inst: str, future: Future) -> Decimal | None:
        try:
            price = future.result()
        except UnknownInstrumentError:
            logger.warning("Price source does not know %s; retrying next tick", inst)
            return None
        except TransientSourceError as exc:
            logger.info("Price unavailable for %s: %s", inst, exc)
            return None
        except Exception:
            logger.warning("Price lookup failed for %s", inst, exc_info=True)
            return None
        if price is None or price <= 0:
            logger.warning("Ignoring non-positive price %s for %s", price, inst)
            return None
        return price

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Run a tick every ``interval_seconds`` until cancelled or ``stop`` is set."""
        logger.info("Evaluation scheduler started (every %ds)", self.interval_seconds)
        while stop is None or not stop.is_set():
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("Evaluation tick failed")

            if stop is None:
                await asyncio.sleep(self.interval_seconds)
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                pass
        logger.info("Evaluation scheduler stopped")
