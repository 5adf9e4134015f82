"""
Conformance - client suite execution and result comparison
"""
from .executor import ConformanceExecutor, SuiteSpec, compare_runs, DEFAULT_SUITES

__all__ = ['ConformanceExecutor', 'SuiteSpec', 'compare_runs', 'DEFAULT_SUITES']
