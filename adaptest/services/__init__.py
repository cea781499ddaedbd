"""Services backing the selection engine."""
