"""REST adapters for the integrated brokers."""
