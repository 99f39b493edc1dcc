import asyncio

import pytest

from render_engine.services.deduplicator import QueryDeduplicator


def test_concurrent_requests_share_one_execution() -> None:
    calls = {"count": 0}

    async def compute() -> list[dict[str, int]]:
        calls["count"] += 1
        await asyncio.sleep(0.01)
        return [{"value": 7}]

    async def run():
        async with QueryDeduplicator() as dedup:
            results = await asyncio.gather(*[dedup.resolve("sig-a", compute) for _ in range(5)])
            return results, dedup.unique_queries, dedup.deduplicated

    results, unique, deduplicated = asyncio.run(run())

    assert calls["count"] == 1
    assert unique == 1
    assert deduplicated == 4
    assert all(rows == [{"value": 7}] for rows, _deduped in results)
    assert [deduped for _rows, deduped in results].count(False) == 1


def test_distinct_signatures_execute_separately() -> None:
    calls: list[str] = []

    def make(name: str):
        async def compute() -> str:
            calls.append(name)
            return name

        return compute

    async def run():
        async with QueryDeduplicator() as dedup:
            await asyncio.gather(dedup.resolve("a", make("a")), dedup.resolve("b", make("b")), dedup.resolve("a", make("a2")))
            return dedup.unique_queries, dedup.deduplicated

    unique, deduplicated = asyncio.run(run())
    assert sorted(calls) == ["a", "b"]
    assert unique == 2
    assert deduplicated == 1


def test_shared_failure_reaches_every_waiter() -> None:
    calls = {"count": 0}

    async def compute() -> str:
        calls["count"] += 1
        await asyncio.sleep(0)
        raise RuntimeError("analytics store rejected the query")

    async def run():
        async with QueryDeduplicator() as dedup:
            return await asyncio.gather(*[dedup.resolve("sig", compute) for _ in range(3)], return_exceptions=True)

    outcomes = asyncio.run(run())
    assert calls["count"] == 1
    assert len(outcomes) == 3
    assert all(isinstance(item, RuntimeError) for item in outcomes)


def test_table_is_cleared_when_scope_exits_even_on_error() -> None:
    async def compute() -> int:
        return 1

    async def run() -> QueryDeduplicator:
        dedup = QueryDeduplicator()
        with pytest.raises(ValueError):
            async with dedup:
                await dedup.resolve("sig", compute)
                raise ValueError("render failed")
        return dedup

    dedup = asyncio.run(run())
    assert dedup.unique_queries == 1

    async def reuse() -> None:
        await dedup.resolve("sig", compute)

    with pytest.raises(RuntimeError):
        asyncio.run(reuse())


def test_separate_renders_do_not_share_results() -> None:
    calls = {"count": 0}

    async def compute() -> int:
        calls["count"] += 1
        return calls["count"]

    async def render_once() -> int:
        async with QueryDeduplicator() as dedup:
            value, _deduped = await dedup.resolve("same-signature", compute)
            return value

    async def run():
        return await render_once(), await render_once()

    assert asyncio.run(run()) == (1, 2)
    assert calls["count"] == 2
