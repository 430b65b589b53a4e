"""Change detection: reconciliation and notification policy."""
