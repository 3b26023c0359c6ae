# encore/main.py

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import aiohttp
import nextcord
from nextcord.ext import commands

from .config import Config, get_lavalink_connection_info
from .utils import load_all_cogs, safe_reply


def _setup_logging() -> logging.Logger:
    logger = logging.getLogger("encore")
    logger.setLevel(logging.INFO)
    logger.handlers.clear()

    log_path = Path(Config.BASE_DIR) / "logs" / "encore.log"
    log_path.parent.mkdir(exist_ok=True)

    formatter = logging.Formatter("%(asctime)s | %(name)s | %(levelname)s | %(message)s")

    file_handler = RotatingFileHandler(log_path, maxBytes=10 * 1024 * 1024, backupCount=3)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    logging.getLogger("nextcord").setLevel(logging.INFO)
    logging.getLogger("mafic").setLevel(logging.INFO)
    return logger


logger = logging.getLogger("encore")


async def _lavalink_health_check() -> tuple[bool, Optional[str]]:
    """Probe the Lavalink REST API once before connecting to Discord."""

    host, port, password, secure = get_lavalink_connection_info()
    scheme = "https" if secure else "http"
    base_url = f"{scheme}://{host}:{port}"
    timeout = aiohttp.ClientTimeout(total=5)
    failure_reason: Optional[str] = None

    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for path in ("version", "v4/version"):
                async with session.get(
                    f"{base_url}/{path}", headers={"Authorization": password}
                ) as response:
                    if response.status == 200:
                        version = (await response.text()).strip()
                        logger.info("lavalink health host=%s port=%s version=%s", host, port, version)
                        return True, None
                    failure_reason = f"/{path} status={response.status}"
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        failure_reason = str(exc) or type(exc).__name__

    logger.warning("lavalink health host=%s port=%s failed (%s)", host, port, failure_reason)
    return False, failure_reason


class EncoreBot(commands.Bot):
    async def close(self) -> None:
        music = self.get_cog("Music")
        if music is not None:
            try:
                await music.shutdown()
            except Exception:
                logger.exception("music shutdown failed")
        await super().close()


def create_bot() -> EncoreBot:
    intents = nextcord.Intents.default()
    intents.voice_states = True

    bot = EncoreBot(intents=intents, description=f"{Config.BOT_USERNAME} Discord bot")

    @bot.listen()
    async def on_application_command_error(
        interaction: nextcord.Interaction, error: Exception
    ) -> None:
        logger.exception(
            "slash command error", extra={"command": getattr(interaction, "data", {})}
        )
        await safe_reply(
            interaction,
            "⚠️ Something went wrong while running that command.",
            ephemeral=True,
        )

    @bot.event
    async def on_ready() -> None:
        if bot.user is None:
            return
        logger.info("bot ready user=%s id=%s", bot.user, bot.user.id)
        if not getattr(bot, "_app_commands_synced", False):
            try:
                await bot.sync_all_application_commands()
            except nextcord.HTTPException:
                logger.exception("failed to sync application commands")
            else:
                bot._app_commands_synced = True
                logger.info("application commands synced")

    load_all_cogs(bot)
    return bot


def main() -> None:
    _setup_logging()
    os.environ.setdefault("MAFIC_LIBRARY", "nextcord")
    Config.validate()
    asyncio.run(_lavalink_health_check())

    bot = create_bot()
    try:
        bot.run(Config.DISCORD_TOKEN)
    except Exception:
        logger.exception("bot failed to start")
        raise


if __name__ == "__main__":
    main()
