"""Entry point to run the role keeper Discord bot."""
import argparse
import asyncio
import logging
import os
from importlib.metadata import PackageNotFoundError, version
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import discord
from discord.ext import commands

from . import bot_config as cfg
from .postgres_handler import PostgresHandler
from .util import build_db_url

# ─── Logging Setup ─────────────────────────────────────────────────────────
logger = logging.getLogger("rolekeeper")
level_name = os.getenv("LOG_LEVEL", "INFO").upper()
level = getattr(logging, level_name, logging.INFO)
logger.setLevel(level)
log_format = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

console_handler = logging.StreamHandler()
console_handler.setFormatter(log_format)
# Limit console output to INFO and above even when file logging is DEBUG
console_handler.setLevel(logging.INFO)

root_logger = logging.getLogger()
root_logger.setLevel(level)
root_logger.addHandler(console_handler)


def get_version() -> str:
    """Return the installed distribution version or a provided VERSION."""
    env_version = os.getenv("ROLEKEEPER_VERSION") or os.getenv("VERSION")
    if env_version:
        return env_version
    try:
        return version("rolekeeper")
    except PackageNotFoundError:
        return "unknown"


intents = discord.Intents.default()
intents.members = True  # role edits and display names


class RoleKeeperBot(commands.Bot):
    async def setup_hook(self) -> None:
        # Load cogs bundled with the package
        cog_dir = Path(__file__).resolve().parent / "cogs"
        for file in sorted(cog_dir.glob("*_cog.py")):
            await self.load_extension(f"rolekeeper.cogs.{file.stem}")


bot = RoleKeeperBot(command_prefix="!", intents=intents)


@bot.event
async def on_ready() -> None:
    logger.info("%s is now online", bot.user)


@bot.event
async def on_error(event: str, *args, **kwargs) -> None:
    logger.exception("Unhandled exception in event %s", event)


async def main() -> None:
    logger.info(
        "Starting role keeper %s in %s environment with level %s",
        get_version(),
        getattr(cfg, "env", "PROD"),
        level_name,
    )
    db_url = build_db_url()
    db_handler = None
    file_handler = None
    if db_url:
        db_handler = PostgresHandler(db_url)
        db_handler.setFormatter(logging.Formatter("%(message)s"))
        await db_handler.connect()
        root_logger.addHandler(db_handler)
        logger.info("Postgres logging enabled; file logging disabled")
    else:
        log_dir = Path("logs")
        log_dir.mkdir(exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_dir / "bot.log", when="midnight", backupCount=90
        )
        file_handler.setFormatter(log_format)
        root_logger.addHandler(file_handler)

    try:
        async with bot:
            await bot.start(cfg.TOKEN)
    finally:
        if db_handler:
            root_logger.removeHandler(db_handler)
            await db_handler.aclose()
        if file_handler:
            file_handler.close()


def cli() -> None:
    parser = argparse.ArgumentParser(description="Run the role keeper bot")
    parser.add_argument("--version", action="version", version=get_version())
    parser.parse_args()
    asyncio.run(main())


if __name__ == "__main__":
    cli()
