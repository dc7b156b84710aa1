"""Chapter summaries, character knowledge snapshots and context selection."""
