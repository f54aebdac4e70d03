"""Service-layer helpers for ticket routing orchestration."""
