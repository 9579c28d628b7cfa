"""
Courtroom — Conversation Court Discord Bot (Main Entry Point)

This file initializes and runs the courtroom bot.

Responsibilities of this file ONLY:
- Create the Discord client/bot instance
- Load configuration and environment variables
- Build the courtroom pipeline (caller-owned, no module singletons)
- Explicitly register command suites from modules
- Feed channel messages into the pipeline
- Start background systems (submission queue, status heartbeat)
- Start the bot and shut the pipeline down cleanly

IMPORTANT ARCHITECTURE RULES:
- Modules do NOT self-register.
- All command registration is explicit and occurs here.
- All pipeline logic lives in modules, not in this file.

The courtroom watches conversations for behavioral offenses, holds a
jury hearing when one is detected, sentences the guilty (muting them for
a while), and files a signed case record with the remote case ledger.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Dict, Optional

import discord
from discord.ext import commands, tasks
from dotenv import load_dotenv

from court.core import CourtroomCore, build_courtroom
from court.errors import SigningKeyError
from locks import sentence
from safety import controls as safety_controls
from state.config import ConfigStore
from state.status import StatusSink
from submission.signing import CaseSigner
from utils.timers import utc_now

LOG_LEVEL = os.getenv("COURTROOM_LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("courtroom")

COMMAND_PREFIX = "~"
HEARTBEAT_SECONDS = 30.0


def _build_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.message_content = True
    intents.members = True
    return intents


def _build_bot() -> commands.Bot:
    intents = _build_intents()
    return commands.Bot(command_prefix=COMMAND_PREFIX, intents=intents)


def _load_signer() -> Optional[CaseSigner]:
    try:
        return CaseSigner.from_key_file()
    except SigningKeyError as exc:
        logger.warning("Case submission disabled: %s", exc)
        return None


def _build_core(bot: commands.Bot, book: sentence.SentenceBook, channels: Dict[str, int]) -> CourtroomCore:
    async def notify(identity: str, text: str) -> None:
        channel_id = channels.get(identity)
        channel = bot.get_channel(channel_id) if channel_id else None
        if channel is None:
            logger.info("No channel to announce case for %s", identity)
            return
        await channel.send(text, allowed_mentions=discord.AllowedMentions.none())

    return build_courtroom(
        ConfigStore(),
        signer=_load_signer(),
        status=StatusSink.for_home(),
        notifier=notify,
        enforcer=book.enforce,
    )


def _register_modules(bot: commands.Bot, core: CourtroomCore, book: sentence.SentenceBook) -> None:
    safety_controls.register(bot, core)
    sentence.register(bot, book, core)


def _register_ingestion(
    bot: commands.Bot,
    core: CourtroomCore,
    book: sentence.SentenceBook,
    channels: Dict[str, int],
) -> None:
    @bot.listen("on_message")
    async def court_listener(message: discord.Message) -> None:
        if message.author.bot or not message.content:
            return
        if message.content.startswith(COMMAND_PREFIX):
            return
        guild_id = message.guild.id if message.guild else None
        identity = sentence.identity_for(guild_id, message.author.id)
        if book.active(identity) is not None:
            return
        channels[identity] = message.channel.id
        await core.ingest(identity, message.content)


def _build_heartbeat(core: CourtroomCore) -> tasks.Loop:
    @tasks.loop(seconds=HEARTBEAT_SECONDS)
    async def heartbeat() -> None:
        core.status_sink.update({"last_check": utc_now().isoformat(), "pid": os.getpid()})

    return heartbeat


async def _serve(token: str) -> None:
    bot = _build_bot()
    book = sentence.SentenceBook()
    channels: Dict[str, int] = {}
    core = _build_core(bot, book, channels)
    heartbeat = _build_heartbeat(core)

    _register_modules(bot, core, book)
    _register_ingestion(bot, core, book, channels)

    @bot.event
    async def on_ready() -> None:
        logger.info("Courtroom connected as %s", bot.user)
        if not core.initialized:
            result = await core.initialize()
            logger.info("Courtroom %s", result.get("status"))
        if not heartbeat.is_running():
            heartbeat.start()

    try:
        async with bot:
            await bot.start(token)
    finally:
        heartbeat.cancel()
        await core.shutdown()


def main() -> None:
    load_dotenv()

    token = os.getenv("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("Missing DISCORD_TOKEN environment variable.")

    try:
        asyncio.run(_serve(token))
    except KeyboardInterrupt:
        logger.info("Courtroom shutting down")


if __name__ == "__main__":
    main()
