"""
Pipeline Module.

Lifecycle state machine, retry scheduling, the per-pipeline supervisor and
the registry of pipelines hosted by a worker.
"""

from lakehouse_cdc.pipeline.registry import PipelineRegistry
from lakehouse_cdc.pipeline.state import PipelineState, PipelineStatus
from lakehouse_cdc.pipeline.supervisor import PipelineSupervisor

__all__ = ["PipelineRegistry", "PipelineState", "PipelineStatus", "PipelineSupervisor"]
