import os

import discord


def build_db_url() -> str | None:
    """Return a Postgres DSN built from env vars."""
    url = os.getenv("PG_DSN") or os.getenv("DATABASE_URL")
    if url:
        return url
    user = os.getenv("PG_USER")
    pwd = os.getenv("PG_PASSWORD")
    db = os.getenv("PG_DB")
    host = os.getenv("PG_HOST", "db")
    port = os.getenv("PG_PORT", "5432")
    if user and pwd and db:
        return f"postgresql+asyncpg://{user}:{pwd}@{host}:{port}/{db}"
    return None


def asyncpg_dsn(url: str) -> str:
    """Strip any SQLAlchemy driver suffix so asyncpg accepts the DSN."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{scheme.split('+', 1)[0]}://{rest}"


def user_name(user: discord.abc.Snowflake | int | None) -> str:
    """Return a user's display name or fallback to their ID."""
    if user is None:
        return "unknown"
    if isinstance(user, int):
        return str(user)
    name = getattr(user, "display_name", None) or getattr(user, "name", None)
    if name:
        return name
    uid = getattr(user, "id", None)
    return str(uid) if uid is not None else "unknown"
