from .discord_enforcement import DiscordEnforcementGateway
from .discord_notifications import DiscordNotificationGateway

__all__ = ["DiscordEnforcementGateway", "DiscordNotificationGateway"]
