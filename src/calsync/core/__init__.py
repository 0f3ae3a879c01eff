"""Process-wide plumbing shared by calsync components: clock, logging, metrics, tracing."""
