from __future__ import annotations

import asyncio
import logging
from typing import Optional

import discord

from ..constants import MAX_MESSAGE_LENGTH
from ..detection.models import DetectionResult
from ..moderation.models import VerificationEvent
from .discord_enforcement import resolve_guild, with_retry

log = logging.getLogger("drasil.gateway.notifications")

STATUS_PREFIX = "Status: "
TRUNCATED = "\n... (truncated)"


def render_case_notice(case: VerificationEvent, detection: Optional[DetectionResult]) -> str:
    lines = [f"Suspicious member flagged: <@{case.user_id}>", f"{STATUS_PREFIX}{case.status.value}"]
    if detection is not None:
        lines.append(
            f"Confidence: {detection.confidence * 100:.0f}% ({detection.confidence_level.value})"
            f"{' via classifier' if detection.used_gpt else ''}"
        )
        if detection.reasons:
            lines.append("Reasons: " + "; ".join(detection.reasons))
        if detection.trigger_content:
            lines.append(f"Trigger: {detection.trigger_content[:300]}")
    if case.thread_id:
        lines.append(f"Thread: <#{case.thread_id}>")
    lines.append(f"Case: {case.id}")
    lines.append(controls_line(case))
    return "\n".join(lines)


def controls_line(case: VerificationEvent) -> str:
    if case.pending:
        return "Use /verify or /ban to resolve this case."
    return "Use /reopen to review this case again."


def replace_status(content: str, case: VerificationEvent) -> str:
    out = []
    for line in content.split("\n"):
        if line.startswith(STATUS_PREFIX):
            out.append(f"{STATUS_PREFIX}{case.status.value}")
        elif line.startswith("Use /"):
            out.append(controls_line(case))
        else:
            out.append(line)
    return "\n".join(out)


def clip(content: str) -> str:
    if len(content) <= MAX_MESSAGE_LENGTH:
        return content
    return content[: MAX_MESSAGE_LENGTH - len(TRUNCATED)] + TRUNCATED


class DiscordNotificationGateway:
    """Plain-text case notices in the admin channel. Never raises into the caller."""

    def __init__(self, client: discord.Client, admin_channel_name: str = "drasil-admin") -> None:
        self._client = client
        self._channel_name = admin_channel_name

    async def _admin_channel(self, server_id: str) -> Optional[discord.TextChannel]:
        guild = await resolve_guild(self._client, server_id)
        if guild is None:
            return None
        channel = discord.utils.get(guild.text_channels, name=self._channel_name)
        if channel is None:
            log.warning("Guild %s has no #%s channel", guild.id, self._channel_name)
        return channel

    async def _notice(self, case: VerificationEvent) -> Optional[discord.Message]:
        if not case.notification_message_id:
            return None
        channel = await self._admin_channel(case.server_id)
        if channel is None:
            return None
        try:
            return await channel.fetch_message(int(case.notification_message_id))
        except discord.NotFound:
            return None

    async def upsert_flagged_user_notification(
        self, case: VerificationEvent, detection: Optional[DetectionResult]
    ) -> Optional[str]:
        try:
            content = clip(render_case_notice(case, detection))
            message = await self._notice(case)
            if message is not None:
                await with_retry(lambda: message.edit(content=content))
                return str(message.id)
            channel = await self._admin_channel(case.server_id)
            if channel is None:
                return None
            sent = await with_retry(
                lambda: channel.send(content, allowed_mentions=discord.AllowedMentions.none())
            )
            return str(sent.id)
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Notification for case %s failed: %s", case.id, e)
            return None

    async def update_notification_controls(self, case: VerificationEvent) -> bool:
        try:
            message = await self._notice(case)
            if message is None:
                return False
            await with_retry(lambda: message.edit(content=clip(replace_status(message.content, case))))
            return True
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Updating notification for case %s failed: %s", case.id, e)
            return False

    async def append_action_log_entry(self, case: VerificationEvent, summary: str) -> bool:
        try:
            message = await self._notice(case)
            if message is None:
                channel = await self._admin_channel(case.server_id)
                if channel is None:
                    return False
                await with_retry(lambda: channel.send(clip(summary), allowed_mentions=discord.AllowedMentions.none()))
                return True
            await with_retry(lambda: message.edit(content=clip(f"{message.content}\n\n{summary}")))
            return True
        except (discord.HTTPException, asyncio.TimeoutError) as e:
            log.warning("Action log for case %s failed: %s", case.id, e)
            return False
