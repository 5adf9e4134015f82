"""
Main entry point for crossbroker
"""
import os
from typing import List, Mapping, Optional
from .cache.store import open_store
from .config import RunSettings
from .models import CacheEntry, PipelineReport
from .pipeline.definition import PipelineDefinition, PipelineLoader
from .pipeline.engine import PipelineEngine


class CrossBroker:
    """Facade over pipeline loading, execution and cache inspection"""

    def __init__(self, definition: PipelineDefinition, **engine_options):
        self.definition = definition
        self.engine = PipelineEngine(definition, **engine_options)

    @classmethod
    def from_file(cls, pipeline_file: str, **engine_options) -> "CrossBroker":
        return cls(PipelineLoader.load_from_file(pipeline_file), **engine_options)

    def run_workflow(self, workflow: Optional[str] = None, jobs: Optional[List[str]] = None) -> PipelineReport:
        """
        Run one workflow of the pipeline.
        """
        return self.engine.run(workflow, jobs)

    def cancel(self) -> None:
        self.engine.cancel()

    @staticmethod
    def list_cache(store_config: dict, prefix: str = "") -> List[CacheEntry]:
        return open_store(store_config).entries(prefix)

    @staticmethod
    def current_settings(env: Optional[Mapping[str, str]] = None) -> RunSettings:
        """
        Run settings the conformance suites would see in this environment.
        """
        return RunSettings.from_env(os.environ if env is None else env)
