# CFSv2 Forecast Rotator
# SPDX-License-Identifier: Apache-2.0

"""
Rolling three-day window of gridMET CFSv2 forecast files.

Core operations:
1. Format classification: aggregated (one merged file) vs ensemble (16 members)
2. Source enumeration and failure-isolated concurrent download
3. Ensemble averaging over the members that actually arrived
4. Atomic replacement of one normalized file per (variable, day-offset)
"""

__version__ = "0.1.0"

from rotator.variables import FormatKind, FormatPolicy, classify
from rotator.sources import SourceDescriptor, enumerate_sources
from rotator.fetcher import EnsembleSet, FetchOutcome, Fetcher
from rotator.aggregate import Aggregator
from rotator.window import CycleResult, CycleState, VariableReport, VariableStatus, WindowManager

__all__ = [
    "FormatKind",
    "FormatPolicy",
    "classify",
    "SourceDescriptor",
    "enumerate_sources",
    "EnsembleSet",
    "FetchOutcome",
    "Fetcher",
    "Aggregator",
    "CycleResult",
    "CycleState",
    "VariableReport",
    "VariableStatus",
    "WindowManager",
]
