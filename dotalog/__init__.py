"""dotalog: log Dota 2 lobbies from ``status`` dumps and backfill them from OpenDota."""

__version__ = "0.3.0"
