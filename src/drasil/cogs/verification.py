from __future__ import annotations

import io
import time
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from ..errors import CaseConflictError, NotFoundError, ValidationError
from ..moderation.auditor import AdminActionAuditor
from ..moderation.coordinator import ModerationActionCoordinator
from ..moderation.history import format_detection_history, format_verification_history
from ..moderation.lifecycle import VerificationLifecycle
from ..moderation.models import ModerationOutcome
from ..observability import observability
from ..services.detection_events_store import DetectionEventsStore
from ..services.servers_store import ServersStore
from ..services.users_store import UsersStore
from ..services.verification_events_store import VerificationEventsStore


def outcome_text(outcome: ModerationOutcome, done: str) -> str:
    text = done
    if outcome.failed_effects:
        text += "\nSome steps failed: " + ", ".join(outcome.failed_effects)
    return text


class VerificationCog(commands.Cog):
    """Moderator commands that resolve or reopen verification cases."""

    def __init__(
        self,
        bot: commands.Bot,
        *,
        coordinator: ModerationActionCoordinator,
        lifecycle: VerificationLifecycle,
        auditor: AdminActionAuditor,
        detections: DetectionEventsStore,
        cases: VerificationEventsStore,
        servers: ServersStore,
        users: UsersStore,
    ) -> None:
        self.bot = bot
        self.coordinator = coordinator
        self.lifecycle = lifecycle
        self.auditor = auditor
        self.detections = detections
        self.cases = cases
        self.servers = servers
        self.users = users

    async def _deny(self, interaction: discord.Interaction) -> bool:
        if interaction.user.guild_permissions.moderate_members:
            return False
        await interaction.response.send_message("ERR_PERM_MODERATE_MEMBERS", ephemeral=True)
        return True

    async def _fail(self, interaction: discord.Interaction, command: str, error: Exception) -> None:
        observability.log_command(command, str(interaction.guild_id), str(interaction.user.id), success=False, error=error)
        await interaction.edit_original_response(content=f"❌ {error}")

    @app_commands.command(name="verify", description="Verify a flagged member and lift their restriction")
    @app_commands.describe(member="Member to verify", notes="Optional notes for the audit log")
    @app_commands.guild_only()
    @app_commands.default_permissions(moderate_members=True)
    async def verify(self, interaction: discord.Interaction, member: discord.Member, notes: Optional[str] = None) -> None:
        if await self._deny(interaction):
            return
        await interaction.response.defer(ephemeral=True)
        started = time.perf_counter()
        try:
            outcome = await self.coordinator.verify_user(
                str(interaction.guild_id), str(member.id), str(interaction.user.id), notes
            )
        except (NotFoundError, ValidationError) as e:
            await self._fail(interaction, "verify", e)
            return
        observability.log_command("verify", str(interaction.guild_id), str(interaction.user.id),
                                  duration_ms=(time.perf_counter() - started) * 1000)
        await interaction.edit_original_response(content=outcome_text(outcome, f"✅ {member.mention} verified."))

    @app_commands.command(name="ban", description="Ban a member and close their verification case")
    @app_commands.describe(member="Member to ban", reason="Reason recorded in the audit log")
    @app_commands.guild_only()
    @app_commands.default_permissions(ban_members=True)
    async def ban(self, interaction: discord.Interaction, member: discord.User, reason: Optional[str] = None) -> None:
        if not interaction.user.guild_permissions.ban_members:
            await interaction.response.send_message("ERR_PERM_BAN_MEMBERS", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True)
        started = time.perf_counter()

        server_id = str(interaction.guild_id)
        try:
            await self.servers.ensure_server(server_id, interaction.guild.name if interaction.guild else None)
            await self.users.ensure_user(str(member.id), member.name, member.created_at)
            await self.users.ensure_user(str(interaction.user.id), interaction.user.name)
            outcome = await self.coordinator.ban_user(server_id, str(member.id), str(interaction.user.id), reason)
        except (NotFoundError, ValidationError) as e:
            await self._fail(interaction, "ban", e)
            return
        observability.log_command("ban", server_id, str(interaction.user.id),
                                  duration_ms=(time.perf_counter() - started) * 1000)
        await interaction.edit_original_response(content=outcome_text(outcome, f"🔨 {member.mention} banned."))

    @app_commands.command(name="reopen", description="Reopen the latest verification case for a member")
    @app_commands.describe(member="Member whose case to reopen", notes="Optional notes for the audit log")
    @app_commands.guild_only()
    @app_commands.default_permissions(moderate_members=True)
    async def reopen(self, interaction: discord.Interaction, member: discord.Member, notes: Optional[str] = None) -> None:
        if await self._deny(interaction):
            return
        await interaction.response.defer(ephemeral=True)

        server_id = str(interaction.guild_id)
        try:
            latest = await self.lifecycle.find_latest(server_id, str(member.id))
            if latest is None:
                raise NotFoundError("VerificationEvent", None, f"No verification case for {member.mention}")
            outcome = await self.coordinator.reopen_verification(latest, str(interaction.user.id), notes)
        except (NotFoundError, CaseConflictError, ValidationError) as e:
            await self._fail(interaction, "reopen", e)
            return
        observability.log_command("reopen", server_id, str(interaction.user.id))
        await interaction.edit_original_response(content=outcome_text(outcome, f"🔄 Case for {member.mention} reopened."))

    @app_commands.command(name="thread", description="Open a verification thread for a pending case")
    @app_commands.describe(member="Member with a pending case")
    @app_commands.guild_only()
    @app_commands.default_permissions(moderate_members=True)
    async def thread(self, interaction: discord.Interaction, member: discord.Member) -> None:
        if await self._deny(interaction):
            return
        await interaction.response.defer(ephemeral=True)

        server_id = str(interaction.guild_id)
        try:
            case = await self.lifecycle.find_active(server_id, str(member.id))
            if case is None:
                raise NotFoundError("VerificationEvent", None, f"No pending verification case for {member.mention}")
            outcome = await self.coordinator.create_verification_thread(case, str(interaction.user.id))
        except (NotFoundError, ValidationError) as e:
            await self._fail(interaction, "thread", e)
            return
        observability.log_command("thread", server_id, str(interaction.user.id))

        if outcome.skipped == "thread_exists":
            text = f"Thread already exists: <#{outcome.case.thread_id}>"
        elif outcome.case and outcome.case.thread_id:
            text = f"🧵 Thread opened: <#{outcome.case.thread_id}>"
        else:
            text = "Could not open a verification thread."
        await interaction.edit_original_response(content=outcome_text(outcome, text))

    @app_commands.command(name="history", description="Download a member's detection and verification history")
    @app_commands.describe(member="Member to look up")
    @app_commands.guild_only()
    @app_commands.default_permissions(moderate_members=True)
    async def history(self, interaction: discord.Interaction, member: discord.User) -> None:
        if await self._deny(interaction):
            return
        await interaction.response.defer(ephemeral=True, thinking=True)

        server_id = str(interaction.guild_id)
        user_id = str(member.id)
        events = await self.detections.find_detection_events_by_server_and_user(server_id, user_id)
        cases = await self.cases.find_verification_events_by_server_and_user(server_id, user_id)
        entries = [(case, await self.auditor.actions_for_case(case.id)) for case in cases]

        report = format_detection_history(user_id, events, server_id)
        report += "\n\n" + format_verification_history(user_id, entries)
        report_file = discord.File(
            io.BytesIO(report.encode("utf-8")),
            filename=f"history_{user_id}_{discord.utils.utcnow().strftime('%Y%m%d_%H%M%S')}.txt",
        )
        observability.log_command("history", server_id, str(interaction.user.id))
        await interaction.followup.send(
            f"{len(events)} detection(s), {len(cases)} case(s) for {member.mention}.",
            file=report_file,
            ephemeral=True,
        )
