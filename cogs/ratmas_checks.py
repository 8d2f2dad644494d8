"""
Ratmas Checks Module - Permission checks for slash commands

RESPONSIBILITIES:
- Organizer check (admin, manage guild, or configured moderator role)
- Safe display-name lookup for User/Member
"""

from __future__ import annotations

from typing import Optional

import disnake
from disnake.ext import commands


def _resolve_member(inter: "disnake.ApplicationCommandInteraction") -> Optional[disnake.Member]:
    """In DMs inter.author is a User; organizer checks need the guild Member"""
    if not inter.guild:
        return None
    if isinstance(inter.author, disnake.Member):
        return inter.author
    return inter.guild.get_member(inter.author.id)


def is_organizer(inter: "disnake.ApplicationCommandInteraction") -> bool:
    member = _resolve_member(inter)
    if not member:
        return False

    perms = member.guild_permissions
    if perms.administrator or perms.manage_guild:
        return True

    try:
        mod_role_id = inter.bot.config.DISCORD_MODERATOR_ROLE_ID
    except AttributeError:
        return False
    return bool(mod_role_id) and any(r.id == mod_role_id for r in member.roles)


def organizer_check():
    """Check if user may run Ratmas lifecycle commands"""
    async def predicate(inter: "disnake.ApplicationCommandInteraction"):
        return is_organizer(inter)

    return commands.check(predicate)


def safe_display_name(author: disnake.User | disnake.Member) -> str:
    """display_name for Member, global name or username for User"""
    if isinstance(author, disnake.Member):
        return author.display_name
    return getattr(author, "global_name", None) or author.name
