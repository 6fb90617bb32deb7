"""
Source of truth for the bot token
======================================================
Everything else (channels, roles, durations) lives in
``rolekeeper.infra.config`` so it can be swapped out in tests.

Usage
-----
$ export env=TEST  # or PROD (default PROD)
$ python -m rolekeeper

* .env (git‑ignored) keeps the token*
DISCORD_TOKEN=xxx
"""
from __future__ import annotations
import os
import logging
from dotenv import load_dotenv
load_dotenv()

# ─── Select env ────────────────────────────────────────────────────────────
env = os.getenv("env", "prod").upper()
IS_TEST = env == "TEST"

# ─── Tokens ───────────────────────────────────────────────────────────────
TOKEN = os.getenv("DISCORD_TOKEN")

logging.getLogger(__name__).info("Loaded %s env", env)
