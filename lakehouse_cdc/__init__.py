"""Lakehouse CDC: PostgreSQL logical replication into Apache Iceberg tables."""

__version__ = "0.1.0"
