"""Model transport interface and implementations."""
