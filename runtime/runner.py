import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional
from engine.model import MOVEMENTS, Event, now_ms
from engine.processor import MovementProcessor, Outcome
from storage.repository import Store, TransientCommitFailure
from .eventlog import EventLog

logger = logging.getLogger(__name__)

_EVENT_KINDS = {
    Outcome.RESOLVED: "MovementResolved",
    Outcome.SKIPPED: "MovementSkipped",
    Outcome.DISCARDED: "MovementDiscarded",
}


@dataclass
class TickSummary:
    """Counts of what one poll tick did with the due movements."""
    now_ms: int
    resolved: int = 0
    skipped: int = 0
    discarded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.resolved + self.skipped + self.discarded + self.failed

    def to_record(self) -> dict:
        return {
            "now_ms": self.now_ms,
            "resolved": self.resolved,
            "skipped": self.skipped,
            "discarded": self.discarded,
            "failed": self.failed,
        }


class MovementPoller:
    """Async driver that resolves due movements on a fixed cadence."""

    def __init__(self, processor: MovementProcessor, store: Store, tick_interval_s: float = 5.0,
                 clock: Callable[[], int] = now_ms):
        self.processor = processor
        self.store = store
        self.tick_interval_s = tick_interval_s
        self.clock = clock
        self.events = EventLog(max_events=10000)
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self):
        """Start the poll loop."""
        if self._task:
            return
        logger.info(f"Starting movement poller (every {self.tick_interval_s}s)")
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        """Stop the poll loop gracefully."""
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Movement poller stopped")

    async def _loop(self):
        """Main poll loop - resolve everything due, then sleep."""
        while True:
            try:
                await self.tick()
            except Exception:
                # The due-movement query itself failed; try again next tick
                logger.exception("Poll tick failed")
            await asyncio.sleep(self.tick_interval_s)

    async def tick(self, now: Optional[int] = None) -> TickSummary:
        """Run one tick off the event loop; ticks never overlap."""
        async with self._lock:
            return await asyncio.to_thread(self.run_once, now)

    def run_once(self, now: Optional[int] = None) -> TickSummary:
        """Resolve every movement due at ``now``, one at a time.

        A failing movement is logged and left for a later tick; it never stops
        the rest of the batch.
        """
        now = self.clock() if now is None else now
        summary = TickSummary(now_ms=now)

        for snapshot in self.store.due_movements(now):
            movement_id = snapshot.get("id")
            try:
                outcome = self.processor.process(snapshot, now)
            except TransientCommitFailure as e:
                logger.warning(f"Commit of movement {movement_id} failed, retrying next tick: {e}")
                summary.failed += 1
                self.events.append(Event("MovementFailed", now, {"movement_id": movement_id,
                                                                 "error": str(e)}))
                continue
            except Exception as e:
                logger.exception(f"Error processing movement {movement_id}")
                summary.failed += 1
                self.events.append(Event("MovementFailed", now, {"movement_id": movement_id,
                                                                 "error": repr(e)}))
                continue

            if outcome == Outcome.RESOLVED:
                summary.resolved += 1
            elif outcome == Outcome.SKIPPED:
                summary.skipped += 1
            else:
                summary.discarded += 1
            self.events.append(Event(_EVENT_KINDS[outcome], now, {
                "movement_id": movement_id,
                "type": snapshot.get("type"),
                "status": snapshot.get("status"),
            }))

        if summary.total:
            logger.info(
                f"Tick at {now}: {summary.resolved} resolved, {summary.skipped} skipped, "
                f"{summary.discarded} discarded, {summary.failed} failed"
            )
        return summary

    def rush(self, movement_id: str, now: Optional[int] = None) -> bool:
        """Make a pending movement due immediately; the next tick resolves it.

        Returns:
            False if the movement does not exist

        Raises:
            TransientCommitFailure: If the movement changed while being rushed
        """
        now = self.clock() if now is None else now
        with self.store.begin() as uow:
            record = uow.get(MOVEMENTS, movement_id)
            if record is None:
                return False
            # Arrival stays strictly after departure
            arrival = max(now, int(record.get("departure_ms", now)) + 1)
            uow.set(MOVEMENTS, movement_id, {"arrival_ms": arrival})
            uow.commit()
        logger.info(f"Movement {movement_id} rushed to {arrival}")
        return True
