"""
Ratmas Cog - Secret Santa event management for one guild

LIFECYCLE:
open → lock → match → notify → complete   (cancel from any active status,
lock may be undone with reopen before matching)

COMMANDS (Organizer):
- /ratmas open [dates] [timezone] [role] - Open a new event
- /ratmas lock / reopen - Close or re-open signups
- /ratmas sync - Enroll everyone holding the event role
- /ratmas match - Generate pairings (event must be locked)
- /ratmas notify - DM every Santa their recipient (safe to re-run)
- /ratmas complete / cancel / purge
- /ratmas participants - View participants

COMMANDS (Anyone):
- /ratmas status - Event status and dates
- /ratmas join [wishlist_url] / update / leave
- /ratmas recipient - Re-read your assignment

DM RELAY:
- DMs from a Santa are forwarded to their recipient anonymously
- "!reply ..." DMs from a recipient go back to their Santa

DATA STORAGE:
- ratmas_state.json - Events, participants, pairings (atomic writes)
- ratmas_state.backup - Hourly backup, used if the main file is unreadable
"""

import asyncio
from pathlib import Path
from typing import Any, Optional

import disnake
from disnake.ext import commands

from .ratmas_checks import is_organizer, organizer_check, safe_display_name
from .ratmas_errors import RatmasError
from .ratmas_gateway import DisnakeRatmasGateway
from .ratmas_matching import DEFAULT_MAX_ATTEMPTS, MIN_PARTICIPANTS
from . import ratmas_messages as copy
from .ratmas_models import CreateEventOptions, Event, EventStatus
from .ratmas_relay import RateLimiter, RelayOutcome, relay_direct_message
from .ratmas_service import RatmasService
from .ratmas_storage import JsonRatmasRepository
from .ratmas_validators import format_date_for_timezone, parse_schedule

ROOT = Path(__file__).parent
DEFAULT_DATA_FILE = ROOT / "ratmas_state.json"

STATUS_EMOJI = {
    EventStatus.OPEN: "🟢",
    EventStatus.LOCKED: "🔒",
    EventStatus.MATCHED: "🎲",
    EventStatus.NOTIFIED: "📬",
    EventStatus.COMPLETED: "🎁",
    EventStatus.CANCELLED: "❌",
}


class RatmasCog(commands.Cog):
    """Ratmas (Secret Santa) event management"""

    def __init__(self, bot):
        self.bot = bot
        self.logger = bot.logger.getChild("ratmas")

        data_file = Path(self._config("RATMAS_DATA_FILE", DEFAULT_DATA_FILE))
        self.repository = JsonRatmasRepository(data_file)
        self.gateway = DisnakeRatmasGateway(bot)
        self.service = RatmasService(
            self.repository,
            self.gateway,
            min_participants=self._config("RATMAS_MIN_PARTICIPANTS", MIN_PARTICIPANTS),
            max_shuffle_attempts=self._config("RATMAS_MAX_SHUFFLE_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            logger=self.logger.getChild("service"),
        )
        self.relay_limiter = RateLimiter(
            limit=self._config("RELAY_RATE_LIMIT_REQUESTS", 5),
            window=self._config("RELAY_RATE_LIMIT_WINDOW", 60),
        )

        # One mutating command at a time
        self._lock = asyncio.Lock()
        self._backup_task: Optional[asyncio.Task] = None
        self._unloaded = False

        self.logger.info(f"Ratmas cog initialized (data file: {data_file})")

    def _config(self, key: str, default: Any) -> Any:
        try:
            value = getattr(self.bot.config, key)
        except AttributeError:
            return default
        return default if value in (None, "") else value

    @property
    def guild_id(self) -> Optional[str]:
        guild_id = self._config("DISCORD_GUILD_ID", None)
        return str(guild_id) if guild_id else None

    # ============ LIFECYCLE HOOKS ============

    async def cog_load(self):
        self._backup_task = asyncio.create_task(self._backup_loop())
        self.logger.info("Ratmas cog loaded")

        if hasattr(self.bot, 'send_to_discord_log'):
            await self.bot.send_to_discord_log("🐀 Ratmas cog loaded successfully", "SUCCESS")

    def cog_unload(self):
        if self._unloaded:
            return

        self._unloaded = True
        self.logger.info("Unloading Ratmas cog...")
        self.repository.backup()

        if self._backup_task:
            self._backup_task.cancel()
        self.logger.info("Ratmas cog unloaded")

    async def _backup_loop(self):
        """Periodic backup"""
        try:
            while True:
                await asyncio.sleep(3600)
                async with self._lock:
                    self.repository.backup()
        except asyncio.CancelledError:
            pass

    # ============ HELPERS ============

    async def _announce(self, event: Event, text: str):
        channel_id = event.config.announcement_channel_id
        if channel_id:
            await self.gateway.send_channel_message(channel_id, text)

    async def _log(self, message: str, level: str = "INFO"):
        if hasattr(self.bot, 'send_to_discord_log'):
            await self.bot.send_to_discord_log(message, level)

    async def _require_event(self, inter: disnake.ApplicationCommandInteraction) -> Optional[Event]:
        event = self.service.get_active_event(inter.guild.id)
        if not event:
            await inter.edit_original_response(content=f"❌ {copy.NO_ACTIVE_EVENT}")
        return event

    async def _transition(self, inter, status: EventStatus, announcement: Optional[str], done: str):
        """Shared body of lock / reopen / complete / cancel"""
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            try:
                event = self.service.update_event_status(event.id, status)
            except RatmasError as e:
                await inter.edit_original_response(content=f"❌ {e}")
                return

        if announcement:
            await self._announce(event, announcement)
        await inter.edit_original_response(content=f"✅ {done}")
        await self._log(f"Ratmas event {event.id} → {status.value} by {inter.author.display_name}")

    # ============ COMMANDS ============

    @commands.slash_command(name="ratmas")
    async def ratmas_root(self, inter: disnake.ApplicationCommandInteraction):
        """Ratmas commands"""
        pass

    @ratmas_root.sub_command(name="open", description="Open a new Ratmas event")
    @organizer_check()
    async def ratmas_open(
        self,
        inter: disnake.ApplicationCommandInteraction,
        role: disnake.Role = commands.Param(description="Role that links Ratmas participants"),
        start_date: str = commands.Param(description="Start date (YYYY-MM-DD)"),
        purchase_deadline: str = commands.Param(description="Purchase deadline (YYYY-MM-DD)"),
        reveal_date: str = commands.Param(description="Opening day (YYYY-MM-DD)"),
        timezone: str = commands.Param(description="IANA timezone, e.g. America/New_York"),
        end_date: str = commands.Param(default=None, description="End date (YYYY-MM-DD)"),
        announcement_channel: disnake.TextChannel = commands.Param(default=None, description="Announcements channel"),
    ):
        """Open new Ratmas event"""
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            try:
                schedule = parse_schedule(start_date, purchase_deadline, reveal_date, timezone, end_date)
                event = self.service.create_event(CreateEventOptions(
                    guild_id=str(inter.guild.id),
                    role_id=str(role.id),
                    timezone=timezone.strip(),
                    announcement_channel_id=str(announcement_channel.id) if announcement_channel else None,
                    **schedule,
                ))
            except RatmasError as e:
                await inter.edit_original_response(content=f"❌ {e}")
                return

        await self._announce(event, copy.event_opened(event))
        await inter.edit_original_response(
            content=f"✅ Ratmas event opened!\n"
                    f"• Role: {role.mention}\n"
                    f"• Timezone: {event.config.timezone}\n"
                    f"• Use `/ratmas sync` to enroll everyone with the role"
        )
        await self._log(f"Ratmas event {event.id} opened by {inter.author.display_name}", "SUCCESS")

    @ratmas_root.sub_command(name="lock", description="Lock Ratmas signups")
    @organizer_check()
    async def ratmas_lock(self, inter: disnake.ApplicationCommandInteraction):
        await self._transition(inter, EventStatus.LOCKED, copy.EVENT_LOCKED, "Ratmas signups locked.")

    @ratmas_root.sub_command(name="reopen", description="Re-open Ratmas signups")
    @organizer_check()
    async def ratmas_reopen(self, inter: disnake.ApplicationCommandInteraction):
        await self._transition(inter, EventStatus.OPEN, copy.EVENT_REOPENED, "Ratmas signups re-opened.")

    @ratmas_root.sub_command(name="complete", description="Mark Ratmas as complete")
    @organizer_check()
    async def ratmas_complete(self, inter: disnake.ApplicationCommandInteraction):
        await self._transition(inter, EventStatus.COMPLETED, copy.EVENT_COMPLETED, "Ratmas event completed.")

    @ratmas_root.sub_command(name="cancel", description="Cancel the Ratmas event")
    @organizer_check()
    async def ratmas_cancel(self, inter: disnake.ApplicationCommandInteraction):
        await self._transition(inter, EventStatus.CANCELLED, copy.EVENT_CANCELLED, "Ratmas event cancelled.")

    @ratmas_root.sub_command(name="purge", description="🗑️ Delete all data of the active event (CAREFUL!)")
    @organizer_check()
    async def ratmas_purge(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            self.repository.backup()
            self.service.purge_event(event.id)

        await inter.edit_original_response(content="✅ Ratmas event data purged (a backup was written first).")
        await self._log(f"Ratmas event {event.id} purged by {inter.author.display_name}", "WARNING")

    @ratmas_root.sub_command(name="sync", description="Enroll everyone holding the Ratmas role")
    @organizer_check()
    async def ratmas_sync(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            try:
                added = await self.service.sync_participants_from_role(event.id)
            except RatmasError as e:
                await inter.edit_original_response(content=f"❌ {e}")
                return
            total = len(self.service.list_participants(event.id))

        await inter.edit_original_response(content=f"✅ {added} new participants synced ({total} total)")

    @ratmas_root.sub_command(name="match", description="Generate Ratmas pairings")
    @organizer_check()
    async def ratmas_match(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            result = self.service.generate_pairings(event.id)

        if not result.success:
            await inter.edit_original_response(content=f"❌ {result.error}")
            return

        await self._announce(event, copy.EVENT_MATCHED)
        await inter.edit_original_response(
            content=f"✅ {result.pairings_created} pairings created\n"
                    f"• Run `/ratmas notify` to DM every Santa"
        )
        await self._log(
            f"Ratmas pairings generated by {inter.author.display_name} - {result.pairings_created} pairs",
            "SUCCESS",
        )

    @ratmas_root.sub_command(name="notify", description="DM every Santa their recipient")
    @organizer_check()
    async def ratmas_notify(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            try:
                report = await self.service.run_notifications(event.id)
            except RatmasError as e:
                await inter.edit_original_response(content=f"❌ {e}")
                return
            notified, total = self.service.get_notification_progress(event.id)

        if report.completed:
            await self._announce(event, copy.EVENT_NOTIFIED)
            await inter.edit_original_response(
                content=f"✅ {report.sent} DMs sent - all {total} Santas notified!"
            )
            await self._log(f"Ratmas: all {total} Santas notified", "SUCCESS")
            return

        lines = [f"⚠️ {report.sent} DMs sent this run ({notified}/{total} notified)."]
        if report.failed:
            lines.append("Could not reach: " + ", ".join(f"<@{f.user_id}>" for f in report.failed))
            channel_id = event.config.announcement_channel_id
            if channel_id:
                for failure in report.failed:
                    await self.gateway.send_channel_message(channel_id, copy.dm_disabled(f"<@{failure.user_id}>"))
        if report.skipped:
            lines.append(f"Skipped {len(report.skipped)} pairings with missing participants.")
        lines.append("Run `/ratmas notify` again once DMs are open.")
        await inter.edit_original_response(content="\n".join(lines))
        await self._log(f"Ratmas notify incomplete: {total - notified} outstanding", "WARNING")

    @ratmas_root.sub_command(name="participants", description="View Ratmas participants")
    @organizer_check()
    async def ratmas_participants(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        event = await self._require_event(inter)
        if not event:
            return

        participants = self.service.list_participants(event.id)
        if not participants:
            await inter.edit_original_response(content="❌ No participants yet")
            return

        embed = disnake.Embed(
            title=f"🐀 Participants ({len(participants)})",
            color=disnake.Color.green()
        )
        lines = [
            f"• {p.display_name} (<@{p.user_id}>){' 🎁' if p.wishlist_url else ''}"
            for p in participants[:20]
        ]
        if len(participants) > 20:
            lines.append(f"... and {len(participants) - 20} more")
        embed.description = "\n".join(lines)
        embed.set_footer(text="🎁 = wishlist provided")

        await inter.edit_original_response(embed=embed)

    @ratmas_root.sub_command(name="status", description="Show current Ratmas event status")
    async def ratmas_status(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        event = await self._require_event(inter)
        if not event:
            return

        tz = event.config.timezone
        timing = self.service.get_event_timing(event.id)
        participants = self.service.list_participants(event.id)

        embed = disnake.Embed(
            title=f"{STATUS_EMOJI.get(event.status, '')} Ratmas: {event.status.value}",
            color=disnake.Color.dark_green()
        )
        embed.add_field(name="Participants", value=str(len(participants)), inline=True)
        if event.status in (EventStatus.MATCHED, EventStatus.NOTIFIED):
            notified, total = self.service.get_notification_progress(event.id)
            embed.add_field(name="Santas notified", value=f"{notified}/{total}", inline=True)

        embed.add_field(
            name=f"Dates ({tz})",
            value=f"Start: {format_date_for_timezone(event.config.event_start_date, tz)}\n"
                  f"Purchase by: {format_date_for_timezone(event.config.purchase_deadline, tz)} "
                  f"({_relative_days(timing.days_until_purchase_deadline)})\n"
                  f"Reveal: {format_date_for_timezone(event.config.reveal_date, tz)} "
                  f"({_relative_days(timing.days_until_reveal)})",
            inline=False
        )

        if is_organizer(inter):
            embed.add_field(
                name="Organizer info",
                value=f"Role: <@&{event.config.role_id}>\n"
                      f"Announcements: {_channel_mention(event.config.announcement_channel_id)}",
                inline=False
            )

        await inter.edit_original_response(embed=embed)

    @ratmas_root.sub_command(name="join", description="Join Ratmas")
    async def ratmas_join(
        self,
        inter: disnake.ApplicationCommandInteraction,
        wishlist_url: str = commands.Param(default=None, description="Amazon wishlist URL"),
    ):
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            try:
                self.service.add_participant(event.id, str(inter.author.id), safe_display_name(inter.author), wishlist_url)
            except RatmasError as e:
                await inter.edit_original_response(content=f"❌ {e}")
                return

        await inter.edit_original_response(content="✅ Joined Ratmas. Squeak squeak!")

    @ratmas_root.sub_command(name="update", description="Update your Ratmas details")
    async def ratmas_update(
        self,
        inter: disnake.ApplicationCommandInteraction,
        wishlist_url: str = commands.Param(default=None, description="Amazon wishlist URL (leave empty to keep)"),
        display_name: str = commands.Param(default=None, description="Name your Santa will see"),
    ):
        await inter.response.defer(ephemeral=True)

        if wishlist_url is None and display_name is None:
            await inter.edit_original_response(content="❌ Nothing to update")
            return

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            try:
                self.service.update_participant_for_user(event.id, str(inter.author.id), display_name, wishlist_url)
            except RatmasError as e:
                await inter.edit_original_response(content=f"❌ {e}")
                return

        await inter.edit_original_response(content="✅ Updated your Ratmas details.")

    @ratmas_root.sub_command(name="leave", description="Leave Ratmas")
    async def ratmas_leave(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        async with self._lock:
            event = await self._require_event(inter)
            if not event:
                return
            try:
                self.service.remove_participant(event.id, str(inter.author.id))
            except RatmasError as e:
                await inter.edit_original_response(content=f"❌ {e}")
                return

        await inter.edit_original_response(content="✅ You have left Ratmas. We'll miss your whiskers.")

    @ratmas_root.sub_command(name="recipient", description="See who you are gifting")
    async def ratmas_recipient(self, inter: disnake.ApplicationCommandInteraction):
        await inter.response.defer(ephemeral=True)

        event = await self._require_event(inter)
        if not event:
            return

        recipient = self.service.get_recipient_for_santa(event.id, str(inter.author.id))
        santa = self.service.get_participant(event.id, str(inter.author.id))
        if not recipient or not santa:
            await inter.edit_original_response(content="❌ You don't have a Ratmas recipient yet")
            return

        await inter.edit_original_response(content=copy.build_pairing_message(event, santa, recipient))

    # ============ DM RELAY ============

    @commands.Cog.listener()
    async def on_message(self, message: disnake.Message):
        if message.author.bot or message.guild is not None:
            return
        if not self.guild_id:
            return

        outcome = await relay_direct_message(
            self.service,
            self.gateway,
            self.relay_limiter,
            self.guild_id,
            str(message.author.id),
            message.content,
        )

        try:
            if outcome == RelayOutcome.DELIVERED:
                await message.add_reaction("✅")
            elif outcome == RelayOutcome.RATE_LIMITED:
                await message.channel.send("⏳ Slow down a little - try again in a minute.")
            elif outcome == RelayOutcome.TOO_LONG:
                await message.channel.send("❌ That message is too long to relay.")
            elif outcome == RelayOutcome.FAILED:
                await message.channel.send("❌ Couldn't deliver your message. They may have DMs disabled.")
        except disnake.HTTPException as e:
            self.logger.debug(f"Relay feedback failed: {e}")


def _relative_days(days: int) -> str:
    if days > 0:
        return f"in {days} day{'s' if days != 1 else ''}"
    if days == 0:
        return "today"
    return f"{-days} day{'s' if days != -1 else ''} ago"


def _channel_mention(channel_id: Optional[str]) -> str:
    return f"<#{channel_id}>" if channel_id else "not set"


def setup(bot):
    bot.add_cog(RatmasCog(bot))
