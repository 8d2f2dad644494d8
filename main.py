import asyncio
import logging
import logging.handlers
import os
import signal
import sys
import time
from typing import Optional

import disnake
from disnake.ext import commands
from dotenv import load_dotenv

load_dotenv("config.env", override=True)


# ============ CONFIG ============
class Config:
    """Load config with validation and defaults"""
    _required = {
        "DISCORD_TOKEN": (str, None),
        "DISCORD_GUILD_ID": (int, None),
    }
    _optional = {
        "DISCORD_LOG_CHANNEL_ID": (int, None),
        "DISCORD_MODERATOR_ROLE_ID": (int, None),
        "DEBUG_MODE": (bool, False),
        "LOG_LEVEL": (str, "INFO"),
        "RATMAS_DATA_FILE": (str, "cogs/ratmas_state.json"),
        "RATMAS_MIN_PARTICIPANTS": (int, 3),
        "RATMAS_MAX_SHUFFLE_ATTEMPTS": (int, 1000),
        "RELAY_RATE_LIMIT_REQUESTS": (int, 5),
        "RELAY_RATE_LIMIT_WINDOW": (int, 60),
    }

    # Recommended ranges, values outside only warn
    _ranges = {
        "RATMAS_MIN_PARTICIPANTS": (2, 500),
        "RATMAS_MAX_SHUFFLE_ATTEMPTS": (1, 100_000),
        "RELAY_RATE_LIMIT_REQUESTS": (1, 100),
        "RELAY_RATE_LIMIT_WINDOW": (1, 3600),
    }

    def __init__(self, environ=None):
        self.environ = os.environ if environ is None else environ
        self.data = {}
        self._load()

    def _load(self):
        missing = []
        for key, (cast_type, _) in self._required.items():
            val = self.environ.get(key)
            if not val or not val.strip():
                missing.append(key)
                continue
            try:
                self.data[key] = self._cast(cast_type, val)
            except ValueError:
                raise RuntimeError(f"Invalid value for {key}: {val!r}")

        if missing:
            raise RuntimeError(f"Missing config: {missing}")

        for key, (cast_type, default) in self._optional.items():
            val = self.environ.get(key)
            if val is None or not str(val).strip():
                self.data[key] = default
                continue
            try:
                self.data[key] = self._cast(cast_type, val)
            except ValueError:
                print(f"Warning: {key}={val!r} is not a valid {cast_type.__name__}, using {default!r}")
                self.data[key] = default
                continue
            if cast_type == int:
                self._validate_int_config(key, self.data[key])

        self.data["LOG_LEVEL"] = str(self.data["LOG_LEVEL"]).upper()

    @staticmethod
    def _cast(cast_type, val: str):
        val = val.strip()
        if cast_type == bool:
            return val.lower() == "true"
        if cast_type == int:
            return int(val)
        return val

    def _validate_int_config(self, key: str, value: int):
        """Validate integer config values are within reasonable ranges"""
        if key in self._ranges:
            min_val, max_val = self._ranges[key]
            if not (min_val <= value <= max_val):
                print(f"Warning: {key}={value} is outside recommended range ({min_val}-{max_val})")

    def __getattr__(self, name: str):
        key = name.upper()
        if key in self.data:
            return self.data[key]
        raise AttributeError(f"Config missing: {key}")


# ============ DISCORD LOGGING ============
class DiscordLogHandler(logging.Handler):
    """Forwards WARNING+ records to the Discord log channel"""

    def __init__(self, bot=None, log_channel_id: Optional[int] = None):
        super().__init__()
        self.bot = bot
        self.log_channel_id = log_channel_id
        self.message_queue: asyncio.Queue = asyncio.Queue(maxsize=50)
        self.sender_task: Optional[asyncio.Task] = None
        self._last_message = {}  # msg_key -> last sent time

    def set_bot(self, bot):
        """Attach the bot once it is connected"""
        self.bot = bot
        if bot and not self.sender_task:
            self.sender_task = asyncio.create_task(self._message_sender())

    def format_record(self, record: logging.LogRecord) -> Optional[str]:
        """Discord message for a record, or None if it should not be sent"""
        if record.levelno < logging.WARNING:
            return None

        # Same message at most once a minute
        msg_key = f"{record.levelname}:{record.getMessage()[:50]}"
        now = time.time()
        if msg_key in self._last_message and (now - self._last_message[msg_key]) < 60:
            return None
        self._last_message[msg_key] = now

        emoji = {"WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🚨"}.get(record.levelname, "ℹ️")
        message = f"{emoji} **{record.levelname}** | {record.name}\n```\n{record.getMessage()}\n```"
        if len(message) > 1900:
            message = message[:1900] + "...\n```"
        return message

    def emit(self, record):
        if not self.bot or not self.log_channel_id:
            return

        try:
            message = self.format_record(record)
            if message:
                self.message_queue.put_nowait(message)
        except asyncio.QueueFull:
            pass  # Drop when Discord can't keep up
        except Exception:
            self.handleError(record)

    async def _message_sender(self):
        while True:
            try:
                message = await self.message_queue.get()
                channel = self.bot.get_channel(self.log_channel_id) if self.bot else None
                if channel:
                    await channel.send(message)
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                break
            except disnake.HTTPException:
                continue

    def close(self):
        if self.sender_task:
            self.sender_task.cancel()
        super().close()


# ============ SETUP ============
def setup_logging(config: Config) -> tuple[logging.Logger, Optional[DiscordLogHandler]]:
    logger = logging.getLogger("bot")
    logger.setLevel(logging.DEBUG if config.DEBUG_MODE else config.LOG_LEVEL)

    # Prevent duplicate handlers
    if logger.handlers:
        discord_handler = next((h for h in logger.handlers if isinstance(h, DiscordLogHandler)), None)
        return logger, discord_handler

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh = logging.handlers.RotatingFileHandler(
        "bot.log", maxBytes=5_000_000, backupCount=5, encoding="utf-8"
    )
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    discord_handler = None
    if config.DISCORD_LOG_CHANNEL_ID:
        discord_handler = DiscordLogHandler(log_channel_id=config.DISCORD_LOG_CHANNEL_ID)
        discord_handler.setLevel(logging.WARNING)
        logger.addHandler(discord_handler)

    return logger, discord_handler


def create_bot(config: Config, logger: logging.Logger, discord_handler: Optional[DiscordLogHandler]):
    intents = disnake.Intents.default()
    intents.members = True  # role membership for /ratmas sync
    intents.message_content = True  # DM relay
    intents.dm_messages = True

    bot = commands.InteractionBot(intents=intents, test_guilds=[config.DISCORD_GUILD_ID])
    bot.config = config
    bot.logger = logger
    bot.discord_handler = discord_handler
    bot.ready_once = False

    async def send_to_discord_log(message: str, level: str = "INFO"):
        """Send a message to the Discord log channel"""
        if not bot.ready_once or not config.DISCORD_LOG_CHANNEL_ID:
            return

        log_channel = bot.get_channel(config.DISCORD_LOG_CHANNEL_ID)
        if not log_channel:
            return

        emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🚨", "SUCCESS": "✅"}.get(level, "ℹ️")
        formatted_message = f"{emoji} **{level}** | {message}"
        if len(formatted_message) > 2000:
            formatted_message = formatted_message[:1997] + "..."

        try:
            await log_channel.send(formatted_message)
        except disnake.HTTPException as e:
            logger.debug(f"Failed to send Discord log message: {e}")

    # Utility for cogs
    bot.send_to_discord_log = send_to_discord_log

    @bot.event
    async def on_ready():
        if bot.ready_once:
            return
        logger.info(f"Logged in as {bot.user}")

        if discord_handler:
            discord_handler.set_bot(bot)
            logger.info("Discord logging handler connected")

        bot.ready_once = True
        await send_to_discord_log(f"🤖 **Bot Online** | {bot.user.name} is ready!", "SUCCESS")

    @bot.event
    async def on_disconnect():
        logger.warning("Bot disconnected from Discord")

    @bot.event
    async def on_resumed():
        logger.info("Bot reconnected to Discord")

    @bot.event
    async def on_error(event, *args, **kwargs):
        logger.error(f"Error in {event}", exc_info=True)

    @bot.event
    async def on_slash_command_error(inter: disnake.ApplicationCommandInteraction, error: commands.CommandError):
        if isinstance(error, commands.CheckFailure):
            message = "❌ Only Ratmas organizers can do that"
        else:
            logger.error(f"Slash command /{inter.application_command.qualified_name} failed: {error}",
                         exc_info=error)
            message = "❌ Something went wrong. The organizers have been notified."

        try:
            if inter.response.is_done():
                await inter.edit_original_response(content=message)
            else:
                await inter.response.send_message(message, ephemeral=True)
        except disnake.HTTPException as e:
            logger.debug(f"Could not report command error: {e}")

    return bot


def load_cogs(bot) -> int:
    """Load cogs and return count of successfully loaded cogs"""
    cogs = ["cogs.Ratmas_cog"]
    loaded = 0
    for cog in cogs:
        try:
            bot.load_extension(cog)
            bot.logger.info(f"Loaded {cog}")
            loaded += 1
        except (commands.ExtensionError, RuntimeError) as e:
            bot.logger.error(f"Failed to load {cog}: {e}", exc_info=True)
    return loaded


async def graceful_shutdown(bot):
    """Unload cogs (flushes backups) and close the connection"""
    bot.logger.info("Shutting down...")

    for cog_name in list(bot.cogs.keys()):
        try:
            bot.remove_cog(cog_name)  # calls cog_unload
        except Exception as e:
            bot.logger.debug(f"Cog unload error for {cog_name}: {e}")

    if not bot.is_closed():
        await bot.close()


def main():
    try:
        config = Config()
    except RuntimeError as e:
        print(f"Fatal: {e}")
        sys.exit(1)

    logger, discord_handler = setup_logging(config)
    bot = create_bot(config, logger, discord_handler)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise KeyboardInterrupt
        loop.create_task(graceful_shutdown(bot))

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)

    logger.info("Starting bot...")

    num_loaded = load_cogs(bot)
    if num_loaded == 0:
        logger.critical("No cogs loaded!")
        sys.exit(1)

    logger.info(f"Successfully loaded {num_loaded} cogs")

    max_retries = 5
    retry_count = 0

    while retry_count < max_retries:
        try:
            bot.run(config.DISCORD_TOKEN)
            break
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received")
            break
        except disnake.LoginFailure:
            logger.critical("Discord rejected the token. Fix DISCORD_TOKEN in config.env")
            break
        except Exception as e:
            retry_count += 1
            logger.critical(f"Bot failed (attempt {retry_count}/{max_retries}): {e}", exc_info=True)

            if retry_count < max_retries:
                wait_time = min(30, 5 * retry_count)
                logger.info(f"Retrying in {wait_time} seconds...")
                time.sleep(wait_time)
            else:
                logger.critical("Max retries exceeded. Bot will not restart.")

    logging.shutdown()


if __name__ == "__main__":
    main()
