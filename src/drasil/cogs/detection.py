from __future__ import annotations

import time
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from ..constants import MAX_MESSAGE_THRESHOLD, MAX_MESSAGE_TIMEFRAME_SECONDS
from ..database import get_database_info
from ..detection.models import UserProfile
from ..detection.orchestrator import DetectionOrchestrator
from ..errors import DrasilError
from ..moderation.coordinator import ModerationActionCoordinator
from ..observability import log_error_with_context, observability
from ..services.servers_store import ServersStore


def profile_from_member(member: discord.Member, recent_messages: Optional[list[str]] = None) -> UserProfile:
    return UserProfile(
        user_id=str(member.id),
        username=member.name,
        account_created_at=member.created_at,
        joined_server_at=member.joined_at,
        recent_messages=list(recent_messages or []),
        nickname=member.nick,
        discriminator=member.discriminator,
    )


class DetectionCog(commands.Cog):
    """Message and join listeners plus the /report and /flag commands."""

    def __init__(
        self,
        bot: commands.Bot,
        *,
        orchestrator: DetectionOrchestrator,
        coordinator: ModerationActionCoordinator,
        servers: ServersStore,
        sqlite_path: str,
    ) -> None:
        self.bot = bot
        self.orchestrator = orchestrator
        self.coordinator = coordinator
        self.servers = servers
        self.sqlite_path = sqlite_path

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        if message.guild is None or message.author.bot:
            return
        if not isinstance(message.author, discord.Member):
            return

        server_id = str(message.guild.id)
        user_id = str(message.author.id)
        try:
            result = await self.orchestrator.detect_message(
                server_id,
                user_id,
                message.content,
                profile_from_member(message.author),
                message_id=str(message.id),
                channel_id=str(message.channel.id),
            )
            if result.suspicious:
                await self.coordinator.handle_detection(server_id, user_id, result)
        except DrasilError as e:
            log_error_with_context(e, {"event": "on_message", "server_id": server_id, "user_id": user_id})

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        if member.bot:
            return
        server_id = str(member.guild.id)
        user_id = str(member.id)
        try:
            await self.servers.ensure_server(server_id, member.guild.name)
            result = await self.orchestrator.detect_new_join(server_id, user_id, profile_from_member(member))
            if result.suspicious:
                await self.coordinator.handle_detection(server_id, user_id, result)
        except DrasilError as e:
            log_error_with_context(e, {"event": "on_member_join", "server_id": server_id, "user_id": user_id})

    @app_commands.command(name="report", description="Report a member as suspicious to the moderators")
    @app_commands.describe(member="Member to report", reason="What they did")
    @app_commands.guild_only()
    async def report(self, interaction: discord.Interaction, member: discord.Member, reason: Optional[str] = None) -> None:
        started = time.perf_counter()
        if member.bot or member.id == interaction.user.id:
            await interaction.response.send_message("You can't report that member.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)

        server_id = str(interaction.guild_id)
        result = await self.orchestrator.record_user_report(
            server_id, str(member.id), str(interaction.user.id), reason, profile_from_member(member)
        )
        await self.coordinator.handle_detection(server_id, str(member.id), result)
        observability.log_command("report", server_id, str(interaction.user.id),
                                  duration_ms=(time.perf_counter() - started) * 1000)
        await interaction.edit_original_response(content=f"Thanks, {member.mention} was reported to the moderators.")

    @app_commands.command(name="flag", description="Flag a member for verification")
    @app_commands.describe(member="Member to flag", reason="Why they need verification")
    @app_commands.guild_only()
    @app_commands.default_permissions(moderate_members=True)
    async def flag(self, interaction: discord.Interaction, member: discord.Member, reason: Optional[str] = None) -> None:
        started = time.perf_counter()
        if not interaction.user.guild_permissions.moderate_members:
            await interaction.response.send_message("ERR_PERM_MODERATE_MEMBERS", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)

        server_id = str(interaction.guild_id)
        result = await self.orchestrator.record_manual_flag(
            server_id, str(member.id), str(interaction.user.id), reason, profile_from_member(member)
        )
        outcome = await self.coordinator.handle_detection(server_id, str(member.id), result)
        observability.log_command("flag", server_id, str(interaction.user.id),
                                  duration_ms=(time.perf_counter() - started) * 1000)
        if outcome.created:
            text = f"{member.mention} flagged; verification case opened."
        else:
            text = f"{member.mention} already has an open case; moderators were notified again."
        if outcome.failed_effects:
            text += "\nSome steps failed: " + ", ".join(outcome.failed_effects)
        await interaction.edit_original_response(content=text)

    drasil = app_commands.Group(
        name="drasil",
        description="Detection settings and status",
        guild_only=True,
        default_permissions=discord.Permissions(manage_guild=True),
    )

    @drasil.command(name="config", description="Show or change this server's detection settings")
    @app_commands.describe(
        message_threshold="Messages allowed inside the timeframe",
        message_timeframe="Timeframe in seconds",
        keywords="Comma separated suspicious keywords",
        min_confidence="Minimum confidence (0-100) before a case is opened",
        auto_restrict="Restrict flagged members automatically",
    )
    async def config(
        self,
        interaction: discord.Interaction,
        message_threshold: Optional[app_commands.Range[int, 1, MAX_MESSAGE_THRESHOLD]] = None,
        message_timeframe: Optional[app_commands.Range[int, 1, MAX_MESSAGE_TIMEFRAME_SECONDS]] = None,
        keywords: Optional[str] = None,
        min_confidence: Optional[app_commands.Range[int, 0, 100]] = None,
        auto_restrict: Optional[bool] = None,
    ) -> None:
        if not interaction.user.guild_permissions.manage_guild:
            await interaction.response.send_message("ERR_PERM_MANAGE_GUILD", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)

        server_id = str(interaction.guild_id)
        changes = {
            key: value
            for key, value in {
                "message_threshold": message_threshold,
                "message_timeframe": message_timeframe,
                "suspicious_keywords": [k.strip() for k in keywords.split(",") if k.strip()] if keywords is not None else None,
                "min_confidence_threshold": min_confidence,
                "auto_restrict": auto_restrict,
            }.items()
            if value is not None
        }
        if changes:
            await self.servers.update_settings(server_id, changes)
        rules = await self.servers.get_server_config(server_id)
        observability.log_command("drasil config", server_id, str(interaction.user.id))
        await interaction.edit_original_response(
            content=(
                f"message_threshold: {rules.message_threshold}\n"
                f"message_timeframe: {rules.timeframe_seconds}s\n"
                f"suspicious_keywords: {', '.join(rules.suspicious_keywords) or '(none)'}\n"
                f"min_confidence_threshold: {rules.min_confidence_threshold}%\n"
                f"auto_restrict: {rules.auto_restrict}"
            )
        )

    @drasil.command(name="health", description="Show detection counters and database status")
    async def health(self, interaction: discord.Interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        summary = observability.get_health_summary()
        db = await get_database_info(self.sqlite_path)
        lines = [
            f"uptime: {summary['uptime_ms'] / 1000:.0f}s",
            f"healthy: {summary['all_healthy']} {summary['health_status']}",
            f"labels: {summary['label_counts']}",
            f"classifier: {summary['classifier_counts']}",
            f"transitions: {summary['transition_counts']}",
            f"persistence failures: {summary['persistence_failures']}",
            f"database: {db['size_mb']:.2f} MB, rows {db['row_counts']}",
            f"tracked members: {len(self.orchestrator.tracker)}",
        ]
        observability.log_command("drasil health", str(interaction.guild_id), str(interaction.user.id))
        await interaction.edit_original_response(content="\n".join(lines))
