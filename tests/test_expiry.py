from datetime import date

import pytest

from conftest import FakeEmailSender, FakeOrderStore, fixed_clock, make_order

from CTAMembership.expiry import ExpiryReminder, ExpiryScanner, find_active_order, membership_status_message
from CTAMembership.models import PurchaseRecord, RenewalLinks

LINKS = RenewalLinks(three_month="https://shop/3", twelve_month="https://shop/12")


def scanner_for(store, audit, clock=None):
    # 2026-10-16 20:00 UTC is already 2026-10-17 at +7h.
    return ExpiryScanner(store, audit, tz_offset_hours=7, clock=clock or fixed_clock(2026, 10, 16, 20, 0))


def test_business_day_uses_offset(audit):
    scanner = scanner_for(FakeOrderStore([]), audit)
    assert scanner.today() == date(2026, 10, 17)
    assert scanner.tomorrow() == date(2026, 10, 18)


def test_tomorrow_rolls_over_month(audit):
    scanner = scanner_for(FakeOrderStore([]), audit, clock=fixed_clock(2026, 10, 31, 12, 0))
    assert scanner.tomorrow() == date(2026, 11, 1)


@pytest.mark.asyncio
async def test_find_expiring_filters(audit):
    store = FakeOrderStore([
        make_order(1, discord_id="10", expiry_date="2026-10-17"),
        make_order(2, discord_id="11", expiry_date="2026-10-17T00:00:00.000Z"),
        make_order(3, discord_id="12", expiry_date="2026-10-18"),
        make_order(4, discord_id="13", expiry_date="2026-10-17", is_old="True"),
        make_order(5, status="processing", discord_id="14", expiry_date="2026-10-17"),
        make_order(6, discord_id="15"),
        make_order(7, discord_id="16", expiry_date="not a date"),
    ])
    scanner = scanner_for(store, audit)

    found = await scanner.find_expiring(date(2026, 10, 17))
    assert [o.id for o in found] == [1, 2]


@pytest.mark.asyncio
async def test_find_expiring_is_idempotent(audit):
    store = FakeOrderStore([make_order(i, expiry_date="2026-10-17") for i in range(1, 6)])
    scanner = ExpiryScanner(store, audit, page_size=2, clock=fixed_clock(2026, 10, 17))

    first = await scanner.find_expiring(scanner.today())
    second = await scanner.find_expiring(scanner.today())
    assert [o.id for o in first] == [o.id for o in second] == [1, 2, 3, 4, 5]
    assert store.updates == [] and store.status_changes == []


@pytest.mark.asyncio
async def test_find_active_order_excludes_given_id(audit):
    store = FakeOrderStore([
        make_order(1, discord_id="42"),
        make_order(2, discord_id="42", is_old="True"),
        make_order(3, discord_id="42"),
        make_order(4, discord_id="43"),
    ])
    assert (await find_active_order(store, 42)).id == 1
    assert (await find_active_order(store, "42", exclude_id=1)).id == 3
    assert await find_active_order(store, "43", exclude_id=4) is None


def test_status_message_days_remaining():
    order = PurchaseRecord.from_api(make_order(1, expiry_date="2026-10-20"))
    msg = membership_status_message(order, 7, fixed_clock(2026, 10, 17, 0, 0))
    assert msg == "Your membership expires on 2026-10-20 (UTC+7). 3 day(s) remaining."


def test_status_message_expired():
    order = PurchaseRecord.from_api(make_order(1, expiry_date="2026-10-10"))
    msg = membership_status_message(order, 7, fixed_clock(2026, 10, 17, 0, 0))
    assert msg.endswith("Expired 7 day(s) ago.")


def test_status_message_missing_cases():
    assert membership_status_message(None, 7).startswith("No active membership found")
    no_expiry = PurchaseRecord.from_api(make_order(1))
    assert "no expiry date is recorded" in membership_status_message(no_expiry, 7)


@pytest.mark.asyncio
async def test_reminder_sends_email_and_dm(audit, notifier):
    store = FakeOrderStore([
        make_order(1, items=["Membership 3 Bulan"], discord_id="10", expiry_date="2026-10-18"),
        make_order(2, items=["Membership 1 Tahun"], email="", discord_id="11", expiry_date="2026-10-18"),
        make_order(3, items=["Kelas Privat"], discord_id="12", expiry_date="2026-10-18"),
        make_order(4, items=["Membership 3 Bulan"], discord_id="13", expiry_date="2026-10-17"),
    ])
    email = FakeEmailSender()
    reminder = ExpiryReminder(scanner_for(store, audit), notifier, email, audit, LINKS)

    result = await reminder.run()

    assert result["success"] and result["count"] == 3 and result["sent"] == 2
    assert [to for to, _, _ in email.sent] == ["budi@example.com"]
    assert "https://shop/3" in email.sent[0][2]
    assert [uid for uid, _, _ in notifier.dms] == ["10", "11"]
    skipped = [r for r in result["results"] if r["status"] == "skipped"]
    assert skipped == [{"orderId": 3, "status": "skipped", "reason": "unknown_duration"}]


@pytest.mark.asyncio
async def test_reminder_store_failure_escalates(audit, notifier):
    store = FakeOrderStore([])
    store.fail_count = RuntimeError("store down")
    reminder = ExpiryReminder(scanner_for(store, audit), notifier, FakeEmailSender(), audit, LINKS)

    result = await reminder.run()
    assert result == {"success": False, "error": "store down"}
    assert "Expiry Reminder Critical Error" in notifier.critical_titles()
