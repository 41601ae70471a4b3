import asyncio

import pytest

from records_engine.errors import QueryExecutionError
from records_engine.services.builder import QueryBuilder
from records_engine.services.execution import QueryExecutionClient
from records_engine.settings import Settings


class _GatedBackend:
    """Holds each fetch until the test opens the gate for its search term."""

    def __init__(self) -> None:
        self.gates: dict[str, asyncio.Event] = {}
        self.started: list[str] = []
        self.cancelled: list[str] = []
        self.failures: set[str] = set()
        self.closed = False

    def gate(self, term: str) -> asyncio.Event:
        return self.gates.setdefault(term, asyncio.Event())

    async def fetch(self, spec):
        term = str(spec.where[0].value)
        self.started.append(term)
        try:
            await self.gate(term).wait()
        except asyncio.CancelledError:
            self.cancelled.append(term)
            raise
        if term in self.failures:
            raise ConnectionError(f"backend down for {term}")
        return [{"name": term}], 1

    async def aclose(self) -> None:
        self.closed = True


def _search(builder: QueryBuilder, term: str):
    return builder.build("students", where=[{"field": "name", "operator": "contains", "value": term}])


async def _until_started(backend: _GatedBackend, count: int) -> None:
    while len(backend.started) < count:
        await asyncio.sleep(0)


def test_last_issued_request_wins(builder: QueryBuilder, settings: Settings) -> None:
    async def scenario() -> None:
        backend = _GatedBackend()
        client = QueryExecutionClient(backend, settings)

        first = asyncio.create_task(client.execute("search", _search(builder, "al")))
        await _until_started(backend, 1)
        second = asyncio.create_task(client.execute("search", _search(builder, "alice")))
        await _until_started(backend, 2)

        backend.gate("alice").set()
        backend.gate("al").set()

        assert await second is not None
        assert await first is None
        assert backend.cancelled == ["al"]

        state = client.state("search")
        assert state.sequence == 2
        assert state.applied_sequence == 2
        assert state.result is not None
        assert state.result.data == [{"name": "alice"}]
        assert state.loading is False

    asyncio.run(scenario())


def test_cancel_discards_in_flight_result(builder: QueryBuilder, settings: Settings) -> None:
    async def scenario() -> None:
        backend = _GatedBackend()
        client = QueryExecutionClient(backend, settings)

        pending = asyncio.create_task(client.execute("search", _search(builder, "bob")))
        await _until_started(backend, 1)
        client.cancel("search")
        backend.gate("bob").set()

        assert await pending is None
        state = client.state("search")
        assert state.result is None
        assert state.applied_sequence == 0
        assert state.loading is False

    asyncio.run(scenario())


def test_failure_keeps_previous_result(builder: QueryBuilder, settings: Settings) -> None:
    async def scenario() -> None:
        backend = _GatedBackend()
        backend.gate("ok").set()
        backend.gate("boom").set()
        backend.failures.add("boom")
        client = QueryExecutionClient(backend, settings)

        envelope = await client.execute("grid", _search(builder, "ok"))
        assert envelope is not None

        with pytest.raises(QueryExecutionError) as exc_info:
            await client.execute("grid", _search(builder, "boom"))
        assert isinstance(exc_info.value.cause, ConnectionError)
        assert exc_info.value.status_code == 502

        state = client.state("grid")
        assert state.result == envelope
        assert state.error is exc_info.value
        assert state.loading is False

    asyncio.run(scenario())


def test_slots_are_independent(builder: QueryBuilder, settings: Settings) -> None:
    async def scenario() -> None:
        backend = _GatedBackend()
        client = QueryExecutionClient(backend, settings)

        left = asyncio.create_task(client.execute("left", _search(builder, "ann")))
        right = asyncio.create_task(client.execute("right", _search(builder, "ben")))
        await _until_started(backend, 2)
        backend.gate("ann").set()
        backend.gate("ben").set()

        assert (await left).data == [{"name": "ann"}]
        assert (await right).data == [{"name": "ben"}]
        assert backend.cancelled == []

    asyncio.run(scenario())


class _StaticBackend:
    def __init__(self, rows, total, *, error: BaseException | None = None) -> None:
        self.rows = rows
        self.total = total
        self.error = error

    async def fetch(self, spec):
        if self.error is not None:
            raise self.error
        return self.rows, self.total

    async def aclose(self) -> None:
        return None


def test_envelope_is_clipped_to_limit(builder: QueryBuilder, settings: Settings) -> None:
    rows = [{"id": str(index)} for index in range(5)]
    client = QueryExecutionClient(_StaticBackend(rows, 0), settings)
    spec = builder.build("students", limit=2)

    envelope = asyncio.run(client.execute("page", spec))

    assert envelope is not None
    assert len(envelope.data) == 2
    assert envelope.total == 2
    assert envelope.spec_hash == spec.fingerprint()


def test_zero_rows_is_not_an_error(builder: QueryBuilder, settings: Settings) -> None:
    client = QueryExecutionClient(_StaticBackend([], 0), settings)
    envelope = asyncio.run(client.execute_once(builder.build("students")))
    assert envelope.data == []
    assert envelope.total == 0


def test_timeout_maps_to_gateway_timeout(builder: QueryBuilder, settings: Settings) -> None:
    client = QueryExecutionClient(_StaticBackend([], 0, error=asyncio.TimeoutError()), settings)
    with pytest.raises(QueryExecutionError) as exc_info:
        asyncio.run(client.execute("page", builder.build("students")))
    assert exc_info.value.status_code == 504


def test_aclose_closes_backend(settings: Settings) -> None:
    backend = _GatedBackend()
    client = QueryExecutionClient(backend, settings)
    asyncio.run(client.aclose())
    assert backend.closed is True


class _StubbornBackend(_GatedBackend):
    """Keeps running after cancellation and answers once its gate opens."""

    async def fetch(self, spec):
        term = str(spec.where[0].value)
        self.started.append(term)
        try:
            await asyncio.shield(self.gate(term).wait())
        except asyncio.CancelledError:
            self.cancelled.append(term)
            await self.gate(term).wait()
        return [{"name": term}], 1


def test_late_answer_from_older_request_is_dropped(builder: QueryBuilder, settings: Settings) -> None:
    async def scenario() -> None:
        backend = _StubbornBackend()
        client = QueryExecutionClient(backend, settings)

        first = asyncio.create_task(client.execute("search", _search(builder, "a")))
        await _until_started(backend, 1)
        second = asyncio.create_task(client.execute("search", _search(builder, "b")))
        await _until_started(backend, 2)

        backend.gate("b").set()
        assert (await second).data == [{"name": "b"}]

        backend.gate("a").set()
        assert await first is None

        state = client.state("search")
        assert state.applied_sequence == 2
        assert state.result.data == [{"name": "b"}]

    asyncio.run(scenario())


def test_idle_slots_are_bounded(builder: QueryBuilder, settings: Settings) -> None:
    client = QueryExecutionClient(_StaticBackend([{"id": "s1"}], 1), settings, max_slots=3)

    async def scenario() -> None:
        for index in range(10):
            await client.execute(f"tenant:user-{index}:grid", builder.build("students"))

    asyncio.run(scenario())

    assert client.slot_count == 3
    assert client.state("tenant:user-9:grid").result is not None
    assert client.state("tenant:user-0:grid").result is None


def test_slots_with_requests_in_flight_are_kept(builder: QueryBuilder, settings: Settings) -> None:
    async def scenario() -> None:
        backend = _GatedBackend()
        client = QueryExecutionClient(backend, settings, max_slots=1)

        pending = asyncio.create_task(client.execute("busy", _search(builder, "slow")))
        await _until_started(backend, 1)
        backend.gate("fast").set()
        await client.execute("other", _search(builder, "fast"))

        assert client.state("busy").loading is True
        backend.gate("slow").set()
        assert (await pending).data == [{"name": "slow"}]

    asyncio.run(scenario())


def test_discard_forgets_slot(builder: QueryBuilder, settings: Settings) -> None:
    client = QueryExecutionClient(_StaticBackend([], 0), settings)
    asyncio.run(client.execute("grid", builder.build("students")))
    assert client.slot_count == 1
    client.discard("grid")
    assert client.slot_count == 0
