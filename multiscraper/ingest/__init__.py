"""Retailer search adapters."""
