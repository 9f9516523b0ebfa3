"""mindweaver: LLM-assisted connection discovery and tag suggestion for markdown vaults."""

__version__ = "0.1.0"
