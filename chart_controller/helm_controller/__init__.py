"""Helm controller package.

This package contains the implementation of the HelmChart controller,
which reconciles HelmChart resources into installer Jobs.
"""

from .config import HelmControllerConfig
from .controller import HelmChartController
from .desired import build_objects, job_name
from .result import Outcome, ReconcileResult

__all__ = [
    "HelmChartController",
    "HelmControllerConfig",
    "Outcome",
    "ReconcileResult",
    "build_objects",
    "job_name",
]
