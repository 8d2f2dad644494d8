"""
Ratmas Gateway - Discord collaborator contract

The engine only ever talks to Discord through RatmasGateway, so tests can
swap in a fake and nothing under cogs/ratmas_* (except this file and the cog)
imports disnake.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List

import disnake

from .ratmas_models import DeliveryResult, MemberInfo

logger = logging.getLogger("bot.ratmas.gateway")


class RatmasGateway(ABC):
    @abstractmethod
    async def fetch_members_with_role(self, guild_id: str, role_id: str, exclude_bots: bool = True) -> List[MemberInfo]:
        pass

    @abstractmethod
    async def send_direct_message(self, user_id: str, text: str) -> DeliveryResult:
        pass

    @abstractmethod
    async def send_channel_message(self, channel_id: str, text: str) -> DeliveryResult:
        pass


class DisnakeRatmasGateway(RatmasGateway):
    """RatmasGateway backed by a live disnake bot"""

    def __init__(self, bot):
        self.bot = bot

    async def fetch_members_with_role(self, guild_id: str, role_id: str, exclude_bots: bool = True) -> List[MemberInfo]:
        guild = self.bot.get_guild(int(guild_id)) or await self.bot.fetch_guild(int(guild_id))
        role = guild.get_role(int(role_id))
        if role is None:
            logger.warning(f"Role {role_id} not found in guild {guild_id}")
            return []

        members = []
        for member in role.members:
            if exclude_bots and member.bot:
                continue
            members.append(MemberInfo(user_id=str(member.id), display_name=member.display_name, bot=member.bot))
        return members

    async def send_direct_message(self, user_id: str, text: str) -> DeliveryResult:
        try:
            user = self.bot.get_user(int(user_id)) or await self.bot.fetch_user(int(user_id))
            await user.send(text)
            return DeliveryResult(success=True)
        except (disnake.HTTPException, ValueError) as e:
            logger.warning(f"Failed to DM {user_id}: {e}")
            return DeliveryResult(success=False, error=str(e))

    async def send_channel_message(self, channel_id: str, text: str) -> DeliveryResult:
        try:
            channel = self.bot.get_channel(int(channel_id)) or await self.bot.fetch_channel(int(channel_id))
            await channel.send(text)
            return DeliveryResult(success=True)
        except (disnake.HTTPException, ValueError, AttributeError) as e:
            logger.warning(f"Failed to post to channel {channel_id}: {e}")
            return DeliveryResult(success=False, error=str(e))
