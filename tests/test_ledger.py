"""Tests for ledger.py — append-only attempt and settlement records."""
from __future__ import annotations

from decimal import Decimal

import pytest

from fakes import FakeAdapter, make_orchestrator, request
from headshot_orchestrator.ledger import MemoryLedger, SQLiteLedger
from headshot_orchestrator.models import Attempt


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path):
    if request.param == "memory":
        return MemoryLedger()
    return SQLiteLedger(tmp_path / "nested" / "ledger.db")


def _attempt(provider="fal", outcome="succeeded", cost="0.02", call=1, detail=""):
    return Attempt(provider, f"{provider}-balanced", outcome, 1.5, Decimal(cost), call, detail)


class TestLedger:

    @pytest.mark.asyncio
    async def test_attempts_kept_in_order_per_job(self, ledger):
        await ledger.record_attempt("job_1", _attempt(outcome="timeout", cost="0", detail="t"))
        await ledger.record_attempt("job_2", _attempt(provider="leonardo"))
        await ledger.record_attempt("job_1", _attempt(call=2))

        rows = await ledger.attempts("job_1")
        assert [a.outcome for a in rows] == ["timeout", "succeeded"]
        assert rows[0].detail == "t"
        assert rows[1].call_number == 2
        assert rows[1].cost == Decimal("0.02")
        assert await ledger.attempts("job_missing") == []
        await ledger.close()

    @pytest.mark.asyncio
    async def test_single_settlement_per_job(self, ledger):
        await ledger.record_settlement("job_1", Decimal("0.04"), "succeeded",
                                       account_id="acct_1", provider_used="fal")
        with pytest.raises(ValueError):
            await ledger.record_settlement("job_1", Decimal("0.04"), "succeeded",
                                           account_id="acct_1", provider_used="fal")
        rows = await ledger.settlements()
        assert len(rows) == 1
        assert rows[0].final_cost == Decimal("0.04")
        assert rows[0].provider_used == "fal"
        await ledger.close()

    @pytest.mark.asyncio
    async def test_settlements_filtered_by_account(self, ledger):
        await ledger.record_settlement("job_1", Decimal("0.01"), "succeeded", account_id="a")
        await ledger.record_settlement("job_2", Decimal("0"), "failed", account_id="b")
        assert [s.job_id for s in await ledger.settlements("b")] == ["job_2"]
        assert (await ledger.settlements("b"))[0].provider_used is None
        await ledger.close()


class TestSQLiteLedger:

    @pytest.mark.asyncio
    async def test_rows_survive_reopen(self, tmp_path):
        path = tmp_path / "ledger.db"
        first = SQLiteLedger(path)
        await first.record_attempt("job_1", _attempt())
        await first.record_settlement("job_1", Decimal("0.02"), "succeeded", account_id="acct")
        await first.close()

        second = SQLiteLedger(path)
        assert len(await second.attempts("job_1")) == 1
        assert (await second.settlements("acct"))[0].outcome == "succeeded"
        await second.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, tmp_path):
        ledger = SQLiteLedger(tmp_path / "ledger.db")
        await ledger.close()
        await ledger.close()

    @pytest.mark.asyncio
    async def test_orchestrator_writes_through_sqlite(self, tmp_path):
        ledger = SQLiteLedger(tmp_path / "ledger.db")
        orch = make_orchestrator(FakeAdapter("fal"), ledger=ledger)
        result = await (await orch.submit(request(count=2))).result()

        attempts = await ledger.attempts(result.job_id)
        settlements = await ledger.settlements("acct_1")
        assert [a.provider for a in attempts] == ["fal"]
        assert len(settlements) == 1
        assert settlements[0].final_cost == Decimal("0.04")
        await orch.aclose()
