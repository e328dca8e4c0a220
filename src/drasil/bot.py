from __future__ import annotations

import logging
from datetime import datetime, timezone

import discord
from discord import app_commands
from discord.ext import commands

from .cogs.detection import DetectionCog
from .cogs.verification import VerificationCog
from .config import Settings
from .constants import CACHE_TTL_SECONDS
from .database import initialize_database
from .detection.classifier import OpenAIProfileClassifier
from .detection.heuristics import MessageFrequencyTracker
from .detection.orchestrator import DetectionOrchestrator
from .gateways import DiscordEnforcementGateway, DiscordNotificationGateway
from .moderation.auditor import AdminActionAuditor
from .moderation.coordinator import ModerationActionCoordinator
from .moderation.lifecycle import VerificationLifecycle
from .observability import log_error_with_context, observability
from .services import (
    AdminActionsStore,
    DetectionEventsStore,
    ServersStore,
    UsersStore,
    VerificationEventsStore,
)
from .services.retention import RetentionTask

log = logging.getLogger("drasil.bot")


class DrasilBot(commands.Bot):
    def __init__(self, settings: Settings) -> None:
        intents = discord.Intents.default()
        intents.members = True
        intents.message_content = bool(settings.message_content_intent)
        log.info("INTENTS: guilds=%s members=%s message_content=%s", intents.guilds, intents.members, intents.message_content)

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            allowed_mentions=discord.AllowedMentions(everyone=False, roles=False, users=True),
            help_command=None,
        )
        self.settings = settings

        cache_ttl = settings.cache_default_ttl_seconds or CACHE_TTL_SECONDS
        path = settings.sqlite_path
        self.servers_store = ServersStore(path, settings, cache_ttl)
        self.users_store = UsersStore(path, cache_ttl)
        self.detection_events_store = DetectionEventsStore(path, cache_ttl)
        self.verification_events_store = VerificationEventsStore(path, cache_ttl)
        self.admin_actions_store = AdminActionsStore(path, cache_ttl)

        classifier = None
        if settings.openai_api_key:
            classifier = OpenAIProfileClassifier(
                settings.openai_api_key,
                model=settings.openai_model,
                timeout_seconds=settings.classifier_timeout_seconds,
            )
        else:
            log.warning("OPENAI_API_KEY not set; profile classifier disabled (heuristic-only detection)")

        self.frequency_tracker = MessageFrequencyTracker()
        self.orchestrator = DetectionOrchestrator(
            rules=self.servers_store,
            classifier=classifier,
            detections=self.detection_events_store,
            users=self.users_store,
            servers=self.servers_store,
            tracker=self.frequency_tracker,
            recent_history_days=settings.recent_history_days,
        )

        self.lifecycle = VerificationLifecycle(self.verification_events_store)
        self.auditor = AdminActionAuditor(self.admin_actions_store, self.servers_store, self.users_store)
        self.coordinator = ModerationActionCoordinator(
            lifecycle=self.lifecycle,
            auditor=self.auditor,
            cases=self.verification_events_store,
            detections=self.detection_events_store,
            users=self.users_store,
            rules=self.servers_store,
            enforcement=DiscordEnforcementGateway(
                self, settings.restricted_role_name, settings.verification_channel_name
            ),
            notifications=DiscordNotificationGateway(self, settings.admin_channel_name),
        )
        self.retention = RetentionTask(
            self.detection_events_store,
            retention_days=settings.detection_retention_days,
            interval_seconds=settings.retention_interval_seconds,
            tracker=self.frequency_tracker,
        )
        self.tree.error(self.on_app_command_error)
        observability.log_startup_event("classifier_configured", "OK" if classifier else "DISABLED")

    async def setup_hook(self) -> None:
        start_time = datetime.now(timezone.utc)

        stores = [
            self.servers_store,
            self.users_store,
            self.detection_events_store,
            self.verification_events_store,
            self.admin_actions_store,
        ]
        await initialize_database(self.settings.sqlite_path, stores)
        observability.log_startup_event("database", "OK")

        await self.add_cog(
            DetectionCog(
                self,
                orchestrator=self.orchestrator,
                coordinator=self.coordinator,
                servers=self.servers_store,
                sqlite_path=self.settings.sqlite_path,
            )
        )
        await self.add_cog(
            VerificationCog(
                self,
                coordinator=self.coordinator,
                lifecycle=self.lifecycle,
                auditor=self.auditor,
                detections=self.detection_events_store,
                cases=self.verification_events_store,
                servers=self.servers_store,
                users=self.users_store,
            )
        )
        observability.log_startup_event("cogs_loaded", "OK")

        self.retention.start()

        synced = await self.tree.sync()
        log.info("Commands synced globally: %s", ", ".join(f"/{c.name}" for c in synced))

        duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        log.info("Drasil startup complete in %.0fms", duration_ms)

    async def close(self) -> None:
        await self.retention.stop()
        await super().close()

    async def on_ready(self) -> None:
        log.info("Logged in as %s (%s) in %d guilds", self.user, getattr(self.user, "id", "?"), len(self.guilds))

    async def on_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        original = getattr(error, "original", error)
        log_error_with_context(
            original,
            {
                "command": interaction.command.name if interaction.command else None,
                "server_id": str(interaction.guild_id) if interaction.guild_id else None,
                "user_id": str(interaction.user.id),
            },
        )
        if isinstance(error, app_commands.CheckFailure):
            message = "You do not have permission to use this command."
        else:
            message = "Something went wrong while running that command."
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)
