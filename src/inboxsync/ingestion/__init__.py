"""Ingestion connectors for inboxsync."""
