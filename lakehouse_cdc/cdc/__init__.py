"""
Change capture module.

Source-independent change events, the per-table event buffer and the batch
assembler that collapses buffered events into table batches.
"""
