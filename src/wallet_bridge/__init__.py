"""Cross-context request/response bridge and durable approval queue for a wallet."""

__version__ = "0.1.0"
