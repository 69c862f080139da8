"""Test the movement poller."""
import asyncio
import pytest
from engine.model import CITIES, MOVEMENTS, Event
from engine.processor import MovementProcessor
from engine.rng import DRNG
from runtime.eventlog import EventLog
from runtime.runner import MovementPoller
from storage.repository import CommitConflict
from conftest import NOW, put_movement


class _FlakyProcessor(MovementProcessor):
    """Blows up on selected movements, processes the rest normally."""

    def __init__(self, store, failures):
        super().__init__(store, rng=DRNG(3))
        self.failures = failures

    def process(self, snapshot, now_ms):
        error = self.failures.get(snapshot["id"])
        if error is not None:
            raise error
        return super().process(snapshot, now_ms)


def test_run_once_resolves_only_due_movements(store, processor):
    put_movement(store, "due", type="reinforce", units={"hoplite": 1})
    put_movement(store, "later", type="reinforce", units={"hoplite": 1}, arrival_ms=NOW + 10)
    poller = MovementPoller(processor, store, clock=lambda: NOW)

    summary = poller.run_once()

    assert summary.resolved == 1
    assert summary.failed == 0
    assert store.get_record(MOVEMENTS, "due") is None
    assert store.get_record(MOVEMENTS, "later") is not None


def test_one_bad_movement_does_not_stall_the_batch(store):
    """Failures are counted and logged, the rest of the batch still runs."""
    put_movement(store, "bad", arrival_ms=10_000)
    put_movement(store, "racing", arrival_ms=20_000)
    put_movement(store, "good", type="reinforce", units={"hoplite": 4}, arrival_ms=30_000)
    processor = _FlakyProcessor(store, {
        "bad": ValueError("corrupt record"),
        "racing": CommitConflict(CITIES, "sparta"),
    })
    poller = MovementPoller(processor, store)

    summary = poller.run_once(NOW)

    assert (summary.resolved, summary.failed) == (1, 2)
    assert store.get_record(CITIES, "sparta")["units"]["hoplite"] == 4
    # Failed movements stay put for the next tick
    assert store.get_record(MOVEMENTS, "bad")["status"] == "moving"
    assert store.get_record(MOVEMENTS, "racing")["status"] == "moving"

    events, _ = poller.events.since(0)
    assert [e.kind for e in events] == ["MovementFailed", "MovementFailed", "MovementResolved"]
    assert events[0].data["movement_id"] == "bad"


def test_discarded_and_skipped_are_counted(store, processor):
    put_movement(store, "junk", type="pillage")
    poller = MovementPoller(processor, store)

    summary = poller.run_once(NOW)

    assert summary.discarded == 1
    assert poller.events.since(0)[0][0].kind == "MovementDiscarded"


def test_rush_makes_a_movement_due(store, processor):
    put_movement(store, "slow", type="trade", units={}, resources={"wood": 5}, arrival_ms=NOW * 10)
    poller = MovementPoller(processor, store, clock=lambda: NOW)

    assert poller.run_once().resolved == 0
    assert poller.rush("slow") is True
    assert store.get_record(MOVEMENTS, "slow")["arrival_ms"] == NOW

    assert poller.run_once().resolved == 1
    assert store.get_record(CITIES, "sparta")["resources"]["wood"] == 1005


def test_rush_never_lands_on_departure(store, processor):
    """A movement dispatched this very millisecond is rushed to one past it."""
    put_movement(store, "fresh", departure_ms=NOW, arrival_ms=NOW + 60_000)
    poller = MovementPoller(processor, store, clock=lambda: NOW)

    assert poller.rush("fresh") is True
    assert store.get_record(MOVEMENTS, "fresh")["arrival_ms"] == NOW + 1
    # Not yet due, so the tick leaves it alone
    assert poller.run_once().total == 0


def test_rush_unknown_movement(store, processor):
    poller = MovementPoller(processor, store)

    assert poller.rush("nope") is False


@pytest.mark.asyncio
async def test_background_loop_processes_movements(store, processor):
    put_movement(store, "due", type="reinforce", units={"hoplite": 2})
    poller = MovementPoller(processor, store, tick_interval_s=0.01)

    await poller.start()
    assert poller.running
    for _ in range(100):
        if store.get_record(MOVEMENTS, "due") is None:
            break
        await asyncio.sleep(0.01)
    await poller.stop()

    assert not poller.running
    assert store.get_record(MOVEMENTS, "due") is None


@pytest.mark.asyncio
async def test_tick_runs_off_the_event_loop(store, processor):
    put_movement(store, "due", type="reinforce", units={"hoplite": 2})
    poller = MovementPoller(processor, store)

    summary = await poller.tick(NOW)

    assert summary.resolved == 1
    assert summary.to_record()["now_ms"] == NOW


def test_event_log_offsets():
    log = EventLog(max_events=3)
    log.append_many([Event("A", i, {}) for i in range(5)])

    assert len(log) == 5
    events, next_offset = log.since(0)
    # The two oldest were trimmed
    assert [e.ts_ms for e in events] == [2, 3, 4]
    assert next_offset == 5
    assert log.since(4, limit=10) == ([events[2]], 5)
    assert log.append(Event("B", 9, {})) == 5
