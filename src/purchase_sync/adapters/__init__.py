"""Message source adapters."""
