"""Multi-retailer search scheduler with new-listing and price-drop notifications."""

__version__ = "1.0.0"
