"""Durable storage adapters."""
