"""Subscription core services."""
