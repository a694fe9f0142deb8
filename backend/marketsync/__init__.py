"""Marketplace synchronization core."""
