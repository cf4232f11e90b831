import pytest

from conftest import make_order

from CTAMembership.models import (
    PurchaseRecord,
    RenewalLinks,
    WebinarRecord,
    classify_duration,
    is_lifetime_product,
)

LINKS = RenewalLinks(three_month="https://shop/3", twelve_month="https://shop/12")


@pytest.mark.parametrize(
    "meta, expected",
    [
        ({}, True),
        ({"is_old": "True"}, False),
        ({"is_old": "false"}, True),
        ({"discord_id": "123"}, False),
        ({"activation_used": "1"}, False),
        ({"activation_used": ""}, False),
        ({"discord_id": ""}, False),
        ({"is_old": "1", "discord_id": "123"}, False),
    ],
)
def test_claimable(meta, expected):
    rec = PurchaseRecord.from_api(make_order(1, code="c", **meta))
    assert rec.claimable is expected


@pytest.mark.parametrize("name", ["Lifetime Plan", "LIFETIME", "annual-lifetime-bundle"])
def test_lifetime_any_casing(name):
    assert is_lifetime_product(name)
    assert PurchaseRecord.from_api(make_order(1, items=["Something", name])).is_lifetime


def test_not_lifetime():
    assert not PurchaseRecord.from_api(make_order(1, items=["Membership 1 Tahun"])).is_lifetime


@pytest.mark.parametrize(
    "name, label, months, url",
    [
        ("Membership 3 Bulan", "3 Bulan", 3, "https://shop/3"),
        ("MEMBERSHIP 1 TAHUN", "1 Tahun", 12, "https://shop/12"),
        ("Kelas 12 bulan", "1 Tahun", 12, "https://shop/12"),
    ],
)
def test_classify_duration(name, label, months, url):
    plan = classify_duration(name, LINKS)
    assert (plan.label, plan.months, plan.renewal_url) == (label, months, url)


@pytest.mark.parametrize("name", ["Membership 6 Bulan", "Lifetime Plan", ""])
def test_classify_duration_unknown(name):
    assert classify_duration(name, LINKS) is None


def test_duplicate_meta_last_write_wins():
    order = make_order(7, code="old")
    order["meta_data"].append({"key": "activation_uuid", "value": "new"})
    assert PurchaseRecord.from_api(order).activation_code == "new"


def test_from_api_normalizes_fields():
    rec = PurchaseRecord.from_api(make_order(9, code=" abc ", discord_id="42", expiry_date="2026-01-31"))
    assert rec.activation_code == "abc"
    assert rec.discord_id == "42"
    assert rec.expiry_date == "2026-01-31"
    assert rec.billing_email == "budi@example.com"


@pytest.mark.parametrize("flag, used", [("True", True), ("true", True), ("1", True), ("False", False), ("", False)])
def test_webinar_flag(flag, used):
    assert WebinarRecord.from_row({"activation_uuid": "w", "is_used": flag}).is_used is used


def test_webinar_row_keeps_extra_columns():
    rec = WebinarRecord.from_row({"activation_uuid": "w", "is_used": "False", "batch": "oct"})
    rec.is_used = True
    row = rec.to_row()
    assert row["batch"] == "oct"
    assert row["is_used"] == "True"
