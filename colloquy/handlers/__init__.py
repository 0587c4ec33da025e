"""Background handlers that drive sessions without a human turn."""
