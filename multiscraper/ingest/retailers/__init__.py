"""Per-retailer adapter implementations."""
