# CFSv2 Forecast Rotator - Error Kinds
# SPDX-License-Identifier: Apache-2.0

"""
Exception hierarchy for the acquisition pipeline.

Cycle-scoped errors (everything except ConfigurationError) are caught by the
WindowManager and turned into a Failed outcome for one (variable, offset).
"""


class RotatorError(Exception):
    """Base class for all rotator errors"""


class ConfigurationError(RotatorError):
    """Unrecoverable configuration problem; aborts the whole invocation"""


class TransientNetworkFailure(RotatorError):
    """Retryable download failure (connection reset, timeout, 5xx)"""


class NoDataAvailable(RotatorError):
    """Every source for a (variable, offset) failed to download"""


class StructuralMismatch(RotatorError):
    """Fetched files disagree in grid, schema or coordinate reference"""


class AggregationToolFailure(RotatorError):
    """The averaging step itself failed or produced an empty result"""


class StaleForecast(RotatorError):
    """Upstream has not yet published today's forecast"""

    def __init__(self, message: str, forecast_date=None):
        super().__init__(message)
        self.forecast_date = forecast_date


class CoupledDesync(RotatorError):
    """A variable in a coupled group failed, so the whole group is held back"""


class CycleCancelled(RotatorError):
    """An in-flight cycle was cancelled by the caller"""
