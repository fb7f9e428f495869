"""Per-tracker webhook receivers and field mapping tables."""
