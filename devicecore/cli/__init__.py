"""CLI module for devicecore."""
