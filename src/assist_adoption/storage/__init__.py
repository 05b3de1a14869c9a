"""Partitioned key-value store contract and its SQL implementation."""
