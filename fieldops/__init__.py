"""Per-project work order persistence core."""
