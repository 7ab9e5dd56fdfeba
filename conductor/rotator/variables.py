# CFSv2 Forecast Rotator - Format Classifier
# SPDX-License-Identifier: Apache-2.0

"""
Publication format of gridMET CFSv2 forecast variables.

The THREDDS archive publishes a handful of variables (currently only VPD) as
one pre-merged daily file. Everything else (fm1000, fm100, tmmx, tmmn, ...)
is published as 4 issuance hours x 4 members that have to be averaged
client-side.

Unknown variables are treated as ensembles: fetching 16 members of a variable
that turns out to be aggregated costs extra downloads, whereas treating an
ensemble variable as aggregated fetches the wrong file or nothing at all.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from rotator.errors import ConfigurationError


VARIABLE_ID_PATTERN = re.compile(r"^[a-z0-9_]+$")


def validate_variable_id(variable_id: str) -> str:
    """Reject identifiers that cannot be safely used in URLs and file names"""
    if not isinstance(variable_id, str) or not VARIABLE_ID_PATTERN.match(variable_id):
        raise ConfigurationError(f"Invalid variable identifier: {variable_id!r}")
    return variable_id


class FormatKind(str, Enum):
    """Acquisition strategy for a variable"""
    AGGREGATED = "aggregated"  # One pre-merged file per day-offset
    ENSEMBLE = "ensemble"      # 16 member files averaged locally


@dataclass(frozen=True)
class FormatPolicy:
    """
    Explicit allow-list of variables published in aggregated form.

    Passed to classify() rather than held as module state so the classifier
    stays a pure function.
    """

    aggregated: frozenset[str] = field(default_factory=lambda: frozenset({"vpd"}))

    def __post_init__(self):
        for variable_id in self.aggregated:
            validate_variable_id(variable_id)


DEFAULT_POLICY = FormatPolicy()


def classify(variable_id: str, policy: FormatPolicy = DEFAULT_POLICY) -> FormatKind:
    """Map a variable identifier to its acquisition strategy"""
    if variable_id in policy.aggregated:
        return FormatKind.AGGREGATED
    return FormatKind.ENSEMBLE
