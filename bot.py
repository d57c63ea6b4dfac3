import logging

import discord
from discord.ext import commands
from dotenv import load_dotenv

from radio.config import BotConfig

load_dotenv()

log = logging.getLogger("guildradio")


class GuildRadio(commands.AutoShardedBot):
    def __init__(self, config: BotConfig) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(command_prefix="!", intents=intents)
        self.config = config

    async def setup_hook(self) -> None:
        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        await self.load_extension("cogs.radio_cog")
        await self.tree.sync()
        log.info("Command tree synced.")

        try:
            from radio.metrics import start_metrics_server
            start_metrics_server(self.config.metrics_port)
            log.info("Prometheus metrics server started on :%d", self.config.metrics_port)
        except OSError as exc:
            log.warning("Failed to start metrics server: %s", exc)

        if self.config.web_port:
            try:
                from web.app import start_web_server
                await start_web_server(self, self.config.web_port)
            except OSError as exc:
                log.warning("Failed to start web API: %s", exc)

    async def on_ready(self) -> None:
        guild_count = len(self.guilds)
        log.info("Logged in as %s (ID: %s), %d guilds, %s shard(s)",
                 self.user, self.user.id, guild_count,
                 self.shard_count or 1)
        activity = discord.Activity(
            type=discord.ActivityType.listening,
            name=f"radio in {guild_count} servers",
        )
        await self.change_presence(activity=activity)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    config = BotConfig.from_env()
    bot = GuildRadio(config)
    bot.run(config.token, log_handler=None)


if __name__ == "__main__":
    main()
