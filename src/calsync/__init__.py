"""calsync: reliable outbox-driven sync of workspace events to Google Calendar."""

__version__ = "0.1.0"
