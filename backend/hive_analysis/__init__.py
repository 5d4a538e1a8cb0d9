"""Conversation analysis backend: theme maps, clusters, and outliers for hive conversations."""

__version__ = "0.1.0"
