"""Background query execution."""
