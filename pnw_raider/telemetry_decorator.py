"""Usage tracking for slash command callbacks."""
from __future__ import annotations

import functools
import time
from typing import Any, Callable, Tuple

import discord

from .telemetry import get_telemetry


def _scope(interaction: discord.Interaction) -> Tuple[str, str]:
    guild = str(interaction.guild_id) if interaction.guild_id else "dm"
    return str(interaction.user.id), guild


def track_command(func: Callable) -> Callable:
    """Record latency and outcome of a command callback under its function name.

    Exceptions are counted and re-raised so the command tree's error handler
    still sees them.
    """

    name = func.__name__

    @functools.wraps(func)
    async def wrapper(interaction: discord.Interaction, *args, **kwargs) -> Any:
        user_id, guild_id = _scope(interaction)
        started = time.perf_counter()
        ok = False
        try:
            result = await func(interaction, *args, **kwargs)
            ok = True
            return result
        except Exception as exc:
            get_telemetry().track_error(
                type(exc).__name__, command=name, user_id=user_id, error_details=str(exc)
            )
            raise
        finally:
            get_telemetry().track_command(
                name,
                user_id,
                guild_id,
                success=ok,
                duration_ms=(time.perf_counter() - started) * 1000,
            )

    return wrapper
