"""User-defined automation rules."""
