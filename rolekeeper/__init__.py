"""Time-limited role grants for a Discord guild."""
