"""Notification formatting, delivery and dispatch."""
