"""Registry of the pipelines hosted by this worker."""

import threading
from typing import Any, Callable, Dict, List

from lakehouse_cdc.common.config import PipelineConfig
from lakehouse_cdc.common.errors import PipelineExists, PipelineNotFound
from lakehouse_cdc.observability.logging_config import get_logger
from lakehouse_cdc.pipeline.state import PipelineStatus
from lakehouse_cdc.pipeline.supervisor import PipelineSupervisor

logger = get_logger(__name__)

SupervisorFactory = Callable[[PipelineConfig], PipelineSupervisor]


class PipelineRegistry:
    """
    Explicit map of pipeline id to its supervisor.

    This is the seam the management API drives: lifecycle calls and status
    queries by pipeline id. Pipelines share nothing but this map.
    """

    def __init__(self, factory: SupervisorFactory) -> None:
        """
        Initialize registry.

        Args:
            factory: Builds a supervisor for a pipeline definition
        """
        self._factory = factory
        self._pipelines: Dict[str, PipelineSupervisor] = {}
        self._lock = threading.RLock()

    def create(self, config: PipelineConfig) -> PipelineSupervisor:
        """
        Register a pipeline.

        Raises:
            PipelineExists: If the id is taken
        """
        with self._lock:
            if config.pipeline_id in self._pipelines:
                raise PipelineExists(f"Pipeline {config.pipeline_id} already exists")
            supervisor = self._factory(config)
            self._pipelines[config.pipeline_id] = supervisor
        logger.info(f"Registered pipeline {config.pipeline_id}", extra={"pipeline": config.pipeline_id})
        return supervisor

    def get(self, pipeline_id: str) -> PipelineSupervisor:
        """
        Look up a pipeline.

        Raises:
            PipelineNotFound: If no pipeline has the id
        """
        with self._lock:
            supervisor = self._pipelines.get(pipeline_id)
        if supervisor is None:
            raise PipelineNotFound(f"Pipeline {pipeline_id} not found")
        return supervisor

    def start(self, pipeline_id: str, background: bool = True) -> None:
        self.get(pipeline_id).start(background=background)

    def pause(self, pipeline_id: str) -> None:
        self.get(pipeline_id).pause()

    def resume(self, pipeline_id: str) -> None:
        self.get(pipeline_id).resume()

    def stop(self, pipeline_id: str) -> None:
        self.get(pipeline_id).stop()

    def reset(self, pipeline_id: str) -> None:
        self.get(pipeline_id).reset()

    def remove(self, pipeline_id: str) -> None:
        """Stop a pipeline if it is active and forget it."""
        supervisor = self.get(pipeline_id)
        if supervisor.status_value in (PipelineStatus.RUNNING, PipelineStatus.PAUSED):
            supervisor.stop()
        elif supervisor.status_value == PipelineStatus.FAILED:
            supervisor.reset()
        with self._lock:
            self._pipelines.pop(pipeline_id, None)
        logger.info(f"Removed pipeline {pipeline_id}", extra={"pipeline": pipeline_id})

    def status(self, pipeline_id: str) -> Dict[str, Any]:
        return self.get(pipeline_id).status()

    def list_status(self) -> List[Dict[str, Any]]:
        with self._lock:
            supervisors = list(self._pipelines.values())
        return [s.status() for s in supervisors]

    def pipeline_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._pipelines)

    def stop_all(self) -> None:
        """Stop every active pipeline (used on shutdown)."""
        for pipeline_id in self.pipeline_ids():
            supervisor = self.get(pipeline_id)
            if supervisor.status_value in (PipelineStatus.RUNNING, PipelineStatus.PAUSED):
                supervisor.stop()
