"""Helpers shared by the bot entry point and cogs."""

from __future__ import annotations

import logging
from importlib import resources
from typing import Any

import nextcord
from nextcord.ext import commands

logger = logging.getLogger("encore")


def load_all_cogs(bot: commands.Bot, package: str = "encore.cogs") -> None:
    """Dynamically load every ``.py`` file in the given cog package."""

    for entry in resources.files(package).iterdir():
        if entry.suffix != ".py" or entry.name.startswith("_"):
            continue
        extension = f"{package}.{entry.stem}"
        try:
            bot.load_extension(extension)
            logger.info("Loaded cog: %s", extension)
        except commands.ExtensionAlreadyLoaded:
            logger.info("Cog already loaded: %s", extension)
        except Exception:
            logger.exception("Failed to load %s", extension)


async def safe_reply(
    interaction: nextcord.Interaction, *args: Any, **kwargs: Any
) -> nextcord.Message:
    """Send a response without risking double acknowledgements."""

    responder = getattr(interaction, "response", None)
    followup = getattr(interaction, "followup", None)

    is_done_callable = getattr(responder, "is_done", None)
    is_done = bool(is_done_callable()) if callable(is_done_callable) else bool(is_done_callable)

    if (is_done or is_done_callable is None) and followup:
        return await followup.send(*args, **kwargs)

    if responder and hasattr(responder, "send_message") and not is_done:
        return await responder.send_message(*args, **kwargs)

    if followup:
        return await followup.send(*args, **kwargs)

    raise RuntimeError("Interaction cannot send a response")
