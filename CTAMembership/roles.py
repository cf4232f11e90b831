from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Protocol

import discord

log = logging.getLogger("cta-membership")


class RoleGrantor(Protocol):
    """Adds/removes permission roles on community members (raises on failure)."""

    async def fetch_member(self, user_id: Any) -> Optional[Any]: ...

    async def add_roles(self, user_id: Any, role_ids: Iterable[int], reason: str) -> None: ...

    async def remove_role(self, user_id: Any, role_id: int, reason: str) -> None: ...

    async def has_role(self, user_id: Any, role_id: int) -> bool: ...


class DiscordRoleGrantor:
    """RoleGrantor backed by one Discord guild."""

    def __init__(self, bot: discord.Client, guild_id: int):
        self.bot = bot
        self.guild_id = int(guild_id)

    async def _guild(self) -> discord.Guild:
        guild = self.bot.get_guild(self.guild_id)
        if guild is None:
            guild = await self.bot.fetch_guild(self.guild_id)
        return guild

    async def fetch_member(self, user_id: Any) -> Optional[discord.Member]:
        guild = await self._guild()
        uid = int(user_id)
        member = guild.get_member(uid)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(uid)
        except discord.NotFound:
            return None

    async def _require_member(self, user_id: Any) -> discord.Member:
        member = await self.fetch_member(user_id)
        if member is None:
            raise LookupError(f"Member not found: {user_id}")
        return member

    async def add_roles(self, user_id: Any, role_ids: Iterable[int], reason: str) -> None:
        member = await self._require_member(user_id)
        roles = [discord.Object(id=int(r)) for r in role_ids]
        await member.add_roles(*roles, reason=reason)
        log.info(f"Granted roles {[r.id for r in roles]} to {member} ({member.id})")

    async def remove_role(self, user_id: Any, role_id: int, reason: str) -> None:
        member = await self._require_member(user_id)
        await member.remove_roles(discord.Object(id=int(role_id)), reason=reason)
        log.info(f"Removed role {role_id} from {member} ({member.id})")

    async def has_role(self, user_id: Any, role_id: int) -> bool:
        member = await self.fetch_member(user_id)
        if member is None:
            return False
        return any(r.id == int(role_id) for r in member.roles)
