"""Brand payment-link service."""
