"""Colloquy: multi-tenant conversational session engine."""
