from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import discord

log = logging.getLogger("drasil.gateway.enforcement")

T = TypeVar("T")


async def with_retry(fn: Callable[[], Awaitable[T]], *, tries: int = 3) -> T:
    """Retry rate-limit and transient failures with backoff; Forbidden/NotFound fail at once."""
    last: Optional[BaseException] = None
    for attempt in range(tries):
        try:
            return await fn()
        except (discord.Forbidden, discord.NotFound):
            raise
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            last = e
            await asyncio.sleep(0.5 * (2**attempt))
    raise last  # type: ignore[misc]


async def resolve_guild(client: discord.Client, server_id: str) -> Optional[discord.Guild]:
    guild = client.get_guild(int(server_id))
    if guild is None:
        log.warning("Guild %s is not available to the bot", server_id)
    return guild


async def resolve_member(guild: discord.Guild, user_id: str) -> Optional[discord.Member]:
    member = guild.get_member(int(user_id))
    if member is not None:
        return member
    try:
        return await guild.fetch_member(int(user_id))
    except discord.NotFound:
        return None


async def fetch_thread(client: discord.Client, guild: discord.Guild, thread_id: str) -> Optional[discord.Thread]:
    thread = guild.get_thread(int(thread_id))
    if thread is not None:
        return thread
    try:
        channel = await client.fetch_channel(int(thread_id))
    except discord.NotFound:
        return None
    return channel if isinstance(channel, discord.Thread) else None


class DiscordEnforcementGateway:
    """EnforcementGateway over discord.py. Platform errors are logged and reported as False."""

    def __init__(
        self,
        client: discord.Client,
        restricted_role_name: str = "Restricted",
        verification_channel_name: str = "verification",
    ) -> None:
        self._client = client
        self._role_name = restricted_role_name
        self._channel_name = verification_channel_name

    def _restricted_role(self, guild: discord.Guild) -> Optional[discord.Role]:
        role = discord.utils.get(guild.roles, name=self._role_name)
        if role is None:
            log.warning("Guild %s has no %r role", guild.id, self._role_name)
        return role

    async def assign_restricted_role(self, server_id: str, user_id: str) -> bool:
        return await self._set_role(server_id, user_id, add=True)

    async def remove_restricted_role(self, server_id: str, user_id: str) -> bool:
        return await self._set_role(server_id, user_id, add=False)

    async def _set_role(self, server_id: str, user_id: str, *, add: bool) -> bool:
        try:
            guild = await resolve_guild(self._client, server_id)
            if guild is None:
                return False
            role = self._restricted_role(guild)
            member = await resolve_member(guild, user_id)
            if role is None or member is None:
                return False
            if add:
                await with_retry(lambda: member.add_roles(role, reason="Flagged as suspicious"))
            else:
                await with_retry(lambda: member.remove_roles(role, reason="Verified by moderator"))
            return True
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Role %s failed for %s in %s: %s", "add" if add else "remove", user_id, server_id, e)
            return False

    async def ban_member(self, server_id: str, user_id: str, reason: Optional[str] = None) -> bool:
        try:
            guild = await resolve_guild(self._client, server_id)
            if guild is None:
                return False
            await with_retry(
                lambda: guild.ban(discord.Object(id=int(user_id)), reason=reason or "Banned by moderator", delete_message_seconds=0)
            )
            return True
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Ban failed for %s in %s: %s", user_id, server_id, e)
            return False

    async def create_verification_thread(self, server_id: str, user_id: str) -> Optional[str]:
        try:
            guild = await resolve_guild(self._client, server_id)
            if guild is None:
                return None
            channel = discord.utils.get(guild.text_channels, name=self._channel_name)
            if channel is None:
                log.warning("Guild %s has no #%s channel", guild.id, self._channel_name)
                return None
            member = await resolve_member(guild, user_id)
            label = member.name if member else user_id
            thread = await with_retry(
                lambda: channel.create_thread(
                    name=f"verify-{label}"[:100],
                    type=discord.ChannelType.private_thread,
                    invitable=False,
                    reason="Verification case opened",
                )
            )
            if member is not None:
                await with_retry(lambda: thread.add_user(member))
                await thread.send(
                    f"{member.mention}, your account was flagged for review. "
                    "A moderator will talk with you here."
                )
            return str(thread.id)
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Thread creation failed for %s in %s: %s", user_id, server_id, e)
            return None

    async def resolve_thread(self, server_id: str, thread_id: str, status: str) -> bool:
        try:
            guild = await resolve_guild(self._client, server_id)
            if guild is None:
                return False
            thread = await fetch_thread(self._client, guild, thread_id)
            if thread is None:
                return False
            await thread.send(f"Case closed: {status}.")
            await with_retry(lambda: thread.edit(archived=True, locked=True))
            return True
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Resolving thread %s failed: %s", thread_id, e)
            return False

    async def reopen_thread(self, server_id: str, thread_id: str) -> bool:
        try:
            guild = await resolve_guild(self._client, server_id)
            if guild is None:
                return False
            thread = await fetch_thread(self._client, guild, thread_id)
            if thread is None:
                return False
            await with_retry(lambda: thread.edit(archived=False, locked=False))
            await thread.send("Case reopened.")
            return True
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Reopening thread %s failed: %s", thread_id, e)
            return False
