from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from time import perf_counter

from records_engine.backends.base import ResourceBackend
from records_engine.errors import QueryExecutionError, StaleResponseDiscarded
from records_engine.schemas import QuerySpecification, ResultEnvelope
from records_engine.settings import Settings, get_settings

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class SlotState:
    """What a UI bound to one slot is allowed to show."""

    sequence: int = 0
    applied_sequence: int = 0
    result: ResultEnvelope | None = None
    error: QueryExecutionError | None = None
    loading: bool = False


@dataclass(slots=True)
class _Slot:
    state: SlotState = field(default_factory=SlotState)
    task: asyncio.Task[ResultEnvelope] | None = None


class QueryExecutionClient:
    """Dispatches specifications to a backend with last-issued-wins slots.

    Every ``execute`` on a slot takes the next sequence number and cancels
    the slot's in-flight request. A response is applied only while its
    sequence is still the slot's latest; anything older is dropped and the
    superseded caller gets ``None``.

    At most ``max_slots`` slots are remembered; past that, the least recently
    used slots without an in-flight request are forgotten.
    """

    def __init__(
        self,
        backend: ResourceBackend,
        settings: Settings | None = None,
        *,
        max_slots: int | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings or get_settings()
        self._max_slots = max_slots or self._settings.execution_max_slots
        self._slots: OrderedDict[str, _Slot] = OrderedDict()

    @property
    def slot_count(self) -> int:
        return len(self._slots)

    async def execute(self, slot: str, spec: QuerySpecification) -> ResultEnvelope | None:
        entry = self._slots.get(slot)
        if entry is None:
            entry = _Slot()
            self._slots[slot] = entry
            self._evict_idle(keep=slot)
        else:
            self._slots.move_to_end(slot)
        entry.state.sequence += 1
        sequence = entry.state.sequence

        previous = entry.task
        if previous is not None and not previous.done():
            previous.cancel()

        task = asyncio.ensure_future(self._run(spec))
        entry.task = task
        entry.state.loading = True

        try:
            try:
                envelope = await task
            except asyncio.CancelledError:
                if task.cancelled() and sequence != entry.state.sequence:
                    raise StaleResponseDiscarded(slot, sequence, entry.state.sequence)
                if sequence == entry.state.sequence:
                    entry.state.loading = False
                raise
            except QueryExecutionError as exc:
                self._ensure_current(slot, entry, sequence)
                entry.state.error = exc
                entry.state.loading = False
                logger.warning(
                    "query.execute_failed | %s",
                    {"slot": slot, "sequence": sequence, "resource_type": spec.resource_type, "code": exc.code},
                )
                raise

            self._ensure_current(slot, entry, sequence)
            entry.state.result = envelope
            entry.state.applied_sequence = sequence
            entry.state.error = None
            entry.state.loading = False
            return envelope
        except StaleResponseDiscarded as signal:
            logger.info(
                "query.stale_discarded | %s",
                {"slot": signal.slot, "sequence": signal.sequence, "latest_sequence": signal.latest},
            )
            return None
        finally:
            if entry.task is task:
                entry.task = None

    async def execute_once(self, spec: QuerySpecification) -> ResultEnvelope:
        return await self._run(spec)

    def cancel(self, slot: str) -> None:
        entry = self._slots.get(slot)
        if entry is None:
            return
        entry.state.sequence += 1
        entry.state.loading = False
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        entry.task = None

    def state(self, slot: str) -> SlotState:
        entry = self._slots.get(slot)
        if entry is None:
            return SlotState()
        return dataclasses.replace(entry.state)

    def discard(self, slot: str) -> None:
        self.cancel(slot)
        self._slots.pop(slot, None)

    async def aclose(self) -> None:
        for slot in list(self._slots):
            self.discard(slot)
        await self._backend.aclose()

    def _evict_idle(self, *, keep: str) -> None:
        overflow = len(self._slots) - self._max_slots
        if overflow <= 0:
            return
        for key in list(self._slots):
            if overflow <= 0:
                break
            entry = self._slots[key]
            if key != keep and (entry.task is None or entry.task.done()):
                del self._slots[key]
                overflow -= 1
        logger.debug("query.slots_evicted | %s", {"remaining": len(self._slots)})

    def _ensure_current(self, slot: str, entry: _Slot, sequence: int) -> None:
        if sequence != entry.state.sequence:
            raise StaleResponseDiscarded(slot, sequence, entry.state.sequence)

    async def _run(self, spec: QuerySpecification) -> ResultEnvelope:
        started = perf_counter()
        try:
            rows, total = await asyncio.wait_for(
                self._backend.fetch(spec),
                timeout=self._settings.execution_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise QueryExecutionError("Query execution timed out", cause=exc, status_code=504) from exc
        except QueryExecutionError:
            raise
        except Exception as exc:
            raise QueryExecutionError("Query execution failed", cause=exc) from exc

        data = list(rows[: spec.limit])
        elapsed_ms = max(0, int((perf_counter() - started) * 1000))
        envelope = ResultEnvelope(
            data=data,
            total=max(int(total), len(data)),
            spec_hash=spec.fingerprint(),
            execution_time_ms=elapsed_ms,
        )
        logger.info(
            "query.execute | %s",
            {
                "resource_type": spec.resource_type,
                "spec_hash": envelope.spec_hash,
                "row_count": len(data),
                "total": envelope.total,
                "execution_time_ms": elapsed_ms,
            },
        )
        return envelope
