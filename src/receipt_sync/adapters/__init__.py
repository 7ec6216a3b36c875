"""Mail provider adapters."""
