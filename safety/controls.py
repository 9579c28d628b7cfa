"""
Safety Controls — Owner Command Suite for the Courtroom

THIS MODULE DEFINES SERVER OWNER/BOT OWNER-ONLY COMMANDS.

Commands:
- court status: Show pipeline status and counters
- court config {path} [value]: Read or change a configuration value
- court enable / court disable: Toggle the whole courtroom

Every change goes through the ConfigStore (and is persisted there) and
is pushed into the running pipeline right away.
"""

from __future__ import annotations

import json
import os
from typing import Any, Optional

import discord
from discord.ext import commands

from court.core import CourtroomCore
from safety.logging import LogContext, log_admin_change
from utils.text import safe_truncate

MAX_REPLY_LENGTH = 1900


def _get_owner_id() -> Optional[int]:
    raw = os.getenv("COURTROOM_OWNER_ID")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def is_owner(user: discord.abc.User, guild: Optional[discord.Guild]) -> bool:
    owner_id = _get_owner_id()
    if owner_id is not None and user.id == owner_id:
        return True
    return guild is not None and guild.owner_id == user.id


def parse_value(raw: str) -> Any:
    """Interpret chat input as JSON when possible ("30", "true", "{...}"), else as text."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def apply_setting(core: CourtroomCore, path: str, raw: str) -> Any:
    """Parse, persist and apply one owner-supplied value. Raises ValueError if the store rejects it."""
    parsed = parse_value(raw)
    core.config.set(path, parsed)
    core.reconfigure()
    return parsed


def _as_block(value: Any) -> str:
    rendered = json.dumps(value, indent=2, default=str)
    return f"```json\n{safe_truncate(rendered, MAX_REPLY_LENGTH - 12)}\n```"


def register(bot: commands.Bot, core: CourtroomCore) -> None:
    def _owner_only():
        async def predicate(ctx: commands.Context) -> bool:
            return is_owner(ctx.author, ctx.guild)

        return commands.check(predicate)

    @bot.group(name="court", invoke_without_command=True)
    @_owner_only()
    async def court_cmd(ctx: commands.Context) -> None:
        await ctx.reply("Usage: `court status`, `court config <path> [value]`, `court enable|disable`")

    @court_cmd.command(name="status")
    @_owner_only()
    async def status_cmd(ctx: commands.Context) -> None:
        status = core.status()
        status.pop("recent_cases", None)
        status["config"] = core.config.public_config()
        await ctx.reply(_as_block(status))

    @court_cmd.command(name="config")
    @_owner_only()
    async def config_cmd(ctx: commands.Context, path: str, *, value: Optional[str] = None) -> None:
        if value is None:
            await ctx.reply(_as_block({path: core.config.get(path)}))
            return
        try:
            parsed = apply_setting(core, path, value)
        except ValueError as exc:
            await ctx.reply(f"Could not set `{path}`: {safe_truncate(str(exc), 300)}")
            return
        log_admin_change(
            "Configuration changed",
            context=LogContext(actor_id=str(ctx.author.id)),
            change=path,
            value=parsed,
        )
        await ctx.reply(f"`{path}` set to `{safe_truncate(json.dumps(parsed, default=str), 200)}`.")

    async def _toggle(ctx: commands.Context, enabled: bool) -> None:
        core.config.set("enabled", enabled)
        if enabled and not core.initialized:
            await core.initialize()
        core.reconfigure()
        core.status_sink.update({"enabled": enabled})
        log_admin_change(
            "Courtroom toggled",
            context=LogContext(actor_id=str(ctx.author.id)),
            change="enabled",
            value=enabled,
        )
        await ctx.reply("The court is now in session." if enabled else "Court adjourned.")

    @court_cmd.command(name="enable")
    @_owner_only()
    async def enable_cmd(ctx: commands.Context) -> None:
        await _toggle(ctx, True)

    @court_cmd.command(name="disable")
    @_owner_only()
    async def disable_cmd(ctx: commands.Context) -> None:
        await _toggle(ctx, False)
