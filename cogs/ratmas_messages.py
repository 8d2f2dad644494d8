"""
Ratmas Messages - User-facing copy

Everything the bot says in channels and DMs lives here so the cog and the
notification orchestrator phrase things the same way.
"""

from __future__ import annotations

from .ratmas_models import Event, Participant
from .ratmas_validators import format_date_for_timezone

NEED_ORGANIZER = "Only organizers may decree Ratmas commands."
NO_ACTIVE_EVENT = "No active Ratmas event."
NO_WISHLIST = "They haven't provided a wishlist yet. Stay tuned!"

EVENT_LOCKED = "Ratmas signups are now locked. The rat that makes all the rules thanks you for your prompt squeaks."
EVENT_REOPENED = "Ratmas signups are open again! Join with `/ratmas join`."
EVENT_MATCHED = "Pairs have been matched. Stand by for Ratmas DMs."
EVENT_NOTIFIED = "All Ratmas Santas have been DM'd. Happy gifting! 🎁🐀"
EVENT_COMPLETED = "Ratmas is complete. Thank you all for the squeaks and the gifts! 🐀"
EVENT_CANCELLED = "This year's Ratmas has been cancelled."

RELAY_HEADER = "Anonymous Ratmas Santa says:"
RELAY_REPLY_HEADER = "Your Ratmas giftee replies:"
RELAY_REPLY_PREFIX = "!reply"


def event_opened(event: Event) -> str:
    start = format_date_for_timezone(event.config.event_start_date, event.config.timezone)
    return (
        f"🎄 Ratmas is open (starts {start})! Join with `/ratmas join` "
        f"and add your Amazon wishlist!"
    )


def dm_disabled(user_mention: str) -> str:
    return (
        f"{user_mention}, a whiskered whisper from your Ratmas Santa awaits in your DMs. "
        f"Please enable DMs to receive it."
    )


def build_pairing_message(event: Event, santa: Participant, recipient: Participant) -> str:
    """The assignment DM a Santa receives"""
    tz = event.config.timezone

    msg = "🎄 **Ratmas Secret Santa Assignment** 🎁\n\n"
    msg += f"Hello {santa.display_name}!\n\n"
    msg += f"You are the Secret Santa for: **{recipient.display_name}**\n\n"

    if recipient.wishlist_url:
        msg += f"Their wishlist: {recipient.wishlist_url}\n\n"
    else:
        msg += f"{NO_WISHLIST}\n\n"

    msg += f"**Important Dates** ({tz}):\n"
    msg += f"• Purchase by: {format_date_for_timezone(event.config.purchase_deadline, tz)}\n"
    msg += f"• Reveal date: {format_date_for_timezone(event.config.reveal_date, tz)}\n\n"
    msg += "Send me a DM any time and I'll pass it on to your giftee anonymously.\n"
    msg += "Keep this assignment secret! 🤫\n"
    msg += "Happy gifting! 🎅"
    return msg


def relay_to_recipient(text: str) -> str:
    return f"{RELAY_HEADER} {text}\n\n*Reply with `{RELAY_REPLY_PREFIX} your message`.*"


def relay_to_santa(text: str) -> str:
    return f"{RELAY_REPLY_HEADER} {text}"
