"""
Sentence Lock — Timed Message Muting for Convicted Users

THIS MODULE DEFINES USER COMMANDS AND HANDLERS.

The PunishmentEngine decides sentences; this module enforces them in
Discord. While a sentence is active, every message from the convicted
user is removed until it expires or an admin pardons them.

Responsibilities:
- Hold active sentences (the engine's enforcer)
- Intercept and delete messages from sentenced users
- Expire sentences on their own

Commands in this module:
- sentence? {user}: Query sentence status
- pardon {user}: Lift a sentence (administrators only)
- pardon all: Lift every sentence (administrators only)

Registered explicitly via `register(bot, book, core)`.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

import discord
from discord.ext import commands

from court.core import CourtroomCore
from court.models import Punishment
from safety.logging import LogContext, log_admin_change
from utils.timers import Clock, utc_now


def identity_for(guild_id: Optional[int], user_id: int) -> str:
    return f"{guild_id or 'dm'}:{user_id}"


class SentenceBook:
    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._sentences: Dict[str, Punishment] = {}

    async def enforce(self, punishment: Punishment) -> None:
        self._sentences[punishment.identity] = punishment

    def active(self, identity: str, now: Optional[datetime] = None) -> Optional[Punishment]:
        punishment = self._sentences.get(identity)
        if punishment is None:
            return None
        if (now or self._clock()) >= punishment.expires_at:
            self._sentences.pop(identity, None)
            return None
        return punishment

    def pardon(self, identity: str) -> bool:
        return self._sentences.pop(identity, None) is not None

    def pardon_all(self) -> int:
        count = len(self._sentences)
        self._sentences.clear()
        return count

    def all_active(self) -> Dict[str, Punishment]:
        now = self._clock()
        return {identity: p for identity, p in list(self._sentences.items()) if self.active(identity, now)}


def _format_sentence_status(member: discord.Member, punishment: Optional[Punishment]) -> str:
    if punishment is None:
        return f"{member.display_name} is not serving a sentence."
    return (
        f"{member.display_name} is serving a {punishment.tier} sentence for {punishment.offense} "
        f"(ends <t:{int(punishment.expires_at.timestamp())}:R>)."
    )


async def _resolve_member(ctx: commands.Context, target: str) -> Optional[discord.Member]:
    try:
        return await commands.MemberConverter().convert(ctx, target)
    except commands.BadArgument:
        return None


def register(bot: commands.Bot, book: SentenceBook, core: CourtroomCore) -> None:
    @bot.command(name="sentence?")
    async def sentence_status_cmd(ctx: commands.Context, *, target: Optional[str] = None) -> None:
        guild_id = ctx.guild.id if ctx.guild else None
        if not target:
            await ctx.reply(_format_sentence_status(ctx.author, book.active(identity_for(guild_id, ctx.author.id))))
            return
        member = await _resolve_member(ctx, target)
        if not member:
            await ctx.reply("Could not resolve that user.")
            return
        await ctx.reply(_format_sentence_status(member, book.active(identity_for(guild_id, member.id))))

    @bot.command(name="pardon")
    @commands.has_permissions(administrator=True)
    async def pardon_cmd(ctx: commands.Context, *, target: Optional[str] = None) -> None:
        if not target:
            await ctx.reply("Specify a user or `all`.")
            return
        guild_id = ctx.guild.id if ctx.guild else None

        if target.lower() == "all":
            for identity in book.all_active():
                core.punishment.release(identity)
            count = book.pardon_all()
            log_admin_change("All sentences lifted", context=LogContext(actor_id=str(ctx.author.id)), change="pardon_all")
            await ctx.reply(f"Pardoned {count} users.")
            return

        member = await _resolve_member(ctx, target)
        if not member:
            await ctx.reply("Could not resolve that user.")
            return
        identity = identity_for(guild_id, member.id)
        core.punishment.release(identity)
        if not book.pardon(identity):
            await ctx.reply(f"{member.display_name} is not serving a sentence.")
            return
        log_admin_change(
            "Sentence lifted",
            context=LogContext(identity=identity, actor_id=str(ctx.author.id)),
            change="pardon",
        )
        await ctx.reply(f"{member.display_name} has been pardoned.")

    @bot.listen("on_message")
    async def sentence_listener(message: discord.Message) -> None:
        if message.author.bot or message.author == bot.user:
            return
        guild_id = message.guild.id if message.guild else None
        if book.active(identity_for(guild_id, message.author.id)) is None:
            return
        try:
            await message.delete()
        except (discord.Forbidden, discord.HTTPException):
            pass
