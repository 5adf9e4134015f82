"""
Pipeline - job DAG runtime, pipeline definitions and run logging

The engine and job runners are imported from their modules directly;
lower layers depend on the error handler exported here.
"""
from .definition import PipelineDefinition, PipelineLoader, PipelineValidator
from .error_handler import ErrorHandler, RetryConfig
from .job_logger import PipelineLogger

__all__ = [
    'PipelineDefinition',
    'PipelineLoader',
    'PipelineValidator',
    'ErrorHandler',
    'RetryConfig',
    'PipelineLogger',
]
