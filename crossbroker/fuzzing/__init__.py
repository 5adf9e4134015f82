"""
Fuzzing - coverage-guided campaigns over cargo-fuzz targets
"""
from .campaign import FuzzCampaignDriver, ARTIFACT_PREFIXES
from .harness import CargoFuzzHarness, HarnessRun

__all__ = ['FuzzCampaignDriver', 'ARTIFACT_PREFIXES', 'CargoFuzzHarness', 'HarnessRun']
