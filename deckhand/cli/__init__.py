"""Command-line interface for Deckhand."""
