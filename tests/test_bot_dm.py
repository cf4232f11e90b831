from types import SimpleNamespace

import pytest

from conftest import FakeOrderStore, make_order

from CTAMembership.main import CTAMembershipBot
from CTAMembership.models import ActivationCode, ActivationResult
from CTAMembership.views import CHECKING_TEXT, USAGE_TEXT, dm_reply


class FakeAuthor:
    def __init__(self, user_id):
        self.id = user_id

    def __str__(self):
        return "budi#0001"


class FakeMessage:
    def __init__(self, content, user_id=42):
        self.content = content
        self.author = FakeAuthor(user_id)
        self.replies = []

    async def reply(self, text):
        self.replies.append(text)


class FakeActivator:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def activate(self, code, identity):
        self.calls.append((code, identity.id, identity.tag))
        return self.result


def bot_for(audit, orders=None, result=None):
    return SimpleNamespace(
        activator=FakeActivator(result or ActivationResult(True, ActivationCode.OK)),
        orders=orders or FakeOrderStore([]),
        settings=SimpleNamespace(woo_page_size=100, tz_offset_hours=7),
        audit=audit,
    )


async def handle(bot, message):
    await CTAMembershipBot.handle_dm(bot, message)


@pytest.mark.asyncio
async def test_activate_without_code_replies_usage(audit):
    bot = bot_for(audit)
    msg = FakeMessage("/activate")
    await handle(bot, msg)
    assert msg.replies == [USAGE_TEXT]
    assert bot.activator.calls == []


@pytest.mark.asyncio
async def test_activate_replies_checking_then_result(audit):
    result = ActivationResult(False, ActivationCode.NOT_IN_GUILD)
    bot = bot_for(audit, result=result)
    msg = FakeMessage("!act abc-123")
    await handle(bot, msg)
    assert msg.replies == [CHECKING_TEXT, dm_reply(result, "abc-123")]
    assert bot.activator.calls == [("abc-123", "42", "budi#0001")]


@pytest.mark.asyncio
async def test_status_reports_active_membership(audit):
    orders = FakeOrderStore([make_order(1, discord_id="42", expiry_date="2999-01-01")])
    msg = FakeMessage(".expiry")
    await handle(bot_for(audit, orders=orders), msg)
    assert len(msg.replies) == 1
    assert msg.replies[0].startswith("Your membership expires on 2999-01-01")


@pytest.mark.asyncio
async def test_status_lookup_error_reply(audit):
    orders = FakeOrderStore([])
    orders.fail_count = RuntimeError("store down")
    msg = FakeMessage("/membership")
    await handle(bot_for(audit, orders=orders), msg)
    assert msg.replies == ["Could not check your membership right now. Please try again later."]


@pytest.mark.asyncio
async def test_plain_text_is_ignored(audit):
    msg = FakeMessage("hello there")
    await handle(bot_for(audit), msg)
    assert msg.replies == []
