import asyncio
import csv

import pytest

from conftest import write_ledger

from CTAMembership.webinar_ledger import LedgerLockTimeout, MutexLedgerLock, WebinarLedger


def read_csv(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


@pytest.mark.asyncio
async def test_commit_persists_used_row_and_extra_columns(ledger, ledger_path):
    cols = ["activation_uuid", "is_used", "email", "discord_id", "discord_username", "batch"]
    write_ledger(ledger_path, [
        {"activation_uuid": "w-1", "is_used": "False", "batch": "oct"},
        {"activation_uuid": "w-2", "is_used": "False", "batch": "nov"},
    ], columns=cols)

    async with await ledger.open_session() as session:
        session.mark_used(session.find("w-1"), "42", "budi#0001")
        await session.commit()

    rows = read_csv(ledger_path)
    assert rows[0] == {
        "activation_uuid": "w-1", "is_used": "True", "email": "", "discord_id": "42",
        "discord_username": "budi#0001", "batch": "oct",
    }
    assert rows[1]["is_used"] == "False"


@pytest.mark.asyncio
async def test_mark_used_twice_rejected(ledger, ledger_path):
    write_ledger(ledger_path, [{"activation_uuid": "w-1", "is_used": "False"}])
    async with await ledger.open_session() as session:
        row = session.find("w-1")
        session.mark_used(row, "1", "a")
        with pytest.raises(ValueError):
            session.mark_used(row, "2", "b")


@pytest.mark.asyncio
async def test_missing_file_is_empty_ledger(ledger):
    async with await ledger.open_session() as session:
        assert session.records == []
        assert session.find("anything") is None


@pytest.mark.asyncio
async def test_commit_after_release_fails(ledger, ledger_path):
    write_ledger(ledger_path, [{"activation_uuid": "w-1", "is_used": "False"}])
    session = await ledger.open_session()
    await session.release()
    with pytest.raises(RuntimeError):
        await session.commit()


@pytest.mark.asyncio
async def test_file_lock_serializes_sessions(ledger_path):
    ledger = WebinarLedger(ledger_path)
    first = await ledger.open_session()
    waiter = asyncio.ensure_future(ledger.open_session())
    await asyncio.sleep(0.25)
    assert not waiter.done()

    await first.release()
    second = await asyncio.wait_for(waiter, timeout=2)
    assert second.active
    await second.release()


@pytest.mark.asyncio
async def test_mutex_lock_times_out():
    lock = MutexLedgerLock(timeout=0.1)
    held = await lock.acquire()
    with pytest.raises(LedgerLockTimeout):
        await lock.acquire()
    held.release()
    (await lock.acquire()).release()


@pytest.mark.asyncio
async def test_ledger_works_with_mutex_lock(ledger_path):
    write_ledger(ledger_path, [{"activation_uuid": "w-5", "is_used": "False"}])
    ledger = WebinarLedger(ledger_path, lock=MutexLedgerLock(timeout=0.5))
    async with await ledger.open_session() as session:
        session.mark_used(session.find("w-5"), "7", "x")
        await session.commit()
    assert read_csv(ledger_path)[0]["is_used"] == "True"


@pytest.mark.asyncio
async def test_ledger_with_byte_order_mark(ledger, ledger_path):
    ledger_path.write_text(
        "activation_uuid,is_used,email,discord_id,discord_username\nw-1,False,,,\n", encoding="utf-8-sig"
    )
    async with await ledger.open_session() as session:
        row = session.find("w-1")
        assert row is not None and not row.is_used
        session.mark_used(row, "42", "budi#0001")
        await session.commit()

    assert read_csv(ledger_path)[0]["activation_uuid"] == "w-1"
