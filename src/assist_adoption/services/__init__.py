"""Aggregation, ingestion, key rotation and queue services."""
