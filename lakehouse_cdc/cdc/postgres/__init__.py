"""
PostgreSQL CDC Module.

This module reads changes from a logical replication slot using the
wal2json output plugin.
"""

from lakehouse_cdc.cdc.postgres.decoder import Wal2JsonDecoder
from lakehouse_cdc.cdc.postgres.reader import PostgresReplicationReader

__all__ = ["PostgresReplicationReader", "Wal2JsonDecoder"]
