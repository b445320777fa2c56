"""
Apache Iceberg Module.

Schema mapping and evolution, object storage, the REST catalog client and
the table writer that commits batches as Iceberg snapshots.
"""
