# CFSv2 Forecast Rotator - Fetcher
# SPDX-License-Identifier: Apache-2.0

"""
Concurrent, failure-isolated downloads from the THREDDS fileServer.

Every descriptor is fetched on its own worker into its own staging file.
A failed descriptor is recorded as a FetchOutcome with a reason; nothing
raised by one download can reach another download or the caller.

Retries:
- Connection errors, timeouts, truncated streams, HTTP 429/5xx: retried with
  exponential backoff up to max_attempts.
- Any other HTTP error (typically 404 for a member not yet published):
  recorded immediately, no retry.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from rotator.errors import TransientNetworkFailure
from rotator.sources import SourceDescriptor

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 504}

TRANSIENT_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


class FetchStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class FetchOutcome:
    """Result of retrieving one SourceDescriptor"""

    descriptor: SourceDescriptor
    status: FetchStatus
    path: Optional[Path] = None
    reason: Optional[str] = None
    attempts: int = 0

    @classmethod
    def success(cls, descriptor: SourceDescriptor, path: Path, attempts: int) -> "FetchOutcome":
        return cls(descriptor, FetchStatus.SUCCESS, path=path, attempts=attempts)

    @classmethod
    def failure(cls, descriptor: SourceDescriptor, reason: str, attempts: int) -> "FetchOutcome":
        return cls(descriptor, FetchStatus.FAILURE, reason=reason, attempts=attempts)

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.SUCCESS


@dataclass
class EnsembleSet:
    """All fetch outcomes for one (variable, day-offset), in descriptor order"""

    outcomes: list[FetchOutcome] = field(default_factory=list)

    @property
    def successes(self) -> list[FetchOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failures(self) -> list[FetchOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def paths(self) -> list[Path]:
        return [o.path for o in self.successes]

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def __len__(self) -> int:
        return len(self.outcomes)


class Fetcher:
    """Downloads source files into a staging directory"""

    CHUNK_SIZE = 1024 * 1024

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        max_attempts: int = 3,
        backoff_min: float = 2.0,
        backoff_max: float = 30.0,
        max_workers: int = 8,
    ):
        """
        Initialize fetcher.

        Args:
            session: Shared requests session (default: new session)
            timeout: Connect/read timeout per request in seconds
            max_attempts: Attempts per file before it is recorded as failed
            backoff_min: Minimum wait between attempts in seconds
            backoff_max: Maximum wait between attempts in seconds
            max_workers: Concurrent downloads per fetch() call
        """
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.max_workers = max_workers

    @classmethod
    def from_settings(cls, settings, session: Optional[requests.Session] = None) -> "Fetcher":
        return cls(
            session=session,
            timeout=settings.request_timeout,
            max_attempts=settings.max_attempts,
            backoff_min=settings.backoff_min,
            backoff_max=settings.backoff_max,
            max_workers=settings.fetch_workers,
        )

    def fetch(
        self,
        descriptors: Sequence[SourceDescriptor],
        staging_dir: Path,
        cancel_event: Optional[threading.Event] = None,
    ) -> EnsembleSet:
        """
        Retrieve every descriptor and wait for all of them to resolve.

        Args:
            descriptors: Files to fetch
            staging_dir: Private directory for downloaded files
            cancel_event: When set, downloads not yet started are skipped

        Returns:
            EnsembleSet with one outcome per descriptor
        """
        if not descriptors:
            return EnsembleSet()

        staging_dir.mkdir(parents=True, exist_ok=True)
        workers = min(self.max_workers, len(descriptors))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as executor:
            futures = [
                executor.submit(self._fetch_one, d, staging_dir / d.filename, cancel_event)
                for d in descriptors
            ]
            # Join barrier: every attempt resolves before aggregation
            outcomes = [f.result() for f in futures]

        return EnsembleSet(outcomes)

    def _fetch_one(
        self,
        descriptor: SourceDescriptor,
        target: Path,
        cancel_event: Optional[threading.Event],
    ) -> FetchOutcome:
        if cancel_event is not None and cancel_event.is_set():
            return FetchOutcome.failure(descriptor, "cancelled", attempts=0)

        attempts = 0
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type(TransientNetworkFailure),
            before_sleep=lambda state: logger.warning(
                f"Retrying {descriptor.label} (attempt {state.attempt_number} failed: "
                f"{state.outcome.exception()})"
            ),
            reraise=True,
        )

        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._download(descriptor.url, target)
        except TransientNetworkFailure as e:
            target.unlink(missing_ok=True)
            return FetchOutcome.failure(descriptor, f"{e} (gave up after {attempts} attempts)", attempts)
        except requests.HTTPError as e:
            target.unlink(missing_ok=True)
            status = e.response.status_code if e.response is not None else "error"
            return FetchOutcome.failure(descriptor, f"HTTP {status}", attempts)
        except (requests.RequestException, OSError) as e:
            target.unlink(missing_ok=True)
            return FetchOutcome.failure(descriptor, f"{type(e).__name__}: {e}", attempts)

        return FetchOutcome.success(descriptor, target, attempts)

    def _download(self, url: str, target: Path):
        """Stream one URL to target, classifying failures as transient or not"""
        try:
            resp = self.session.get(url, stream=True, timeout=self.timeout)
        except TRANSIENT_EXCEPTIONS as e:
            raise TransientNetworkFailure(f"{type(e).__name__}: {e}") from e

        try:
            if resp.status_code in TRANSIENT_STATUS_CODES:
                raise TransientNetworkFailure(f"HTTP {resp.status_code}")
            resp.raise_for_status()

            written = 0
            with open(target, "wb") as f:
                for chunk in resp.iter_content(chunk_size=self.CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        written += len(chunk)
        except TRANSIENT_EXCEPTIONS as e:
            raise TransientNetworkFailure(f"{type(e).__name__}: {e}") from e
        finally:
            resp.close()

        if written == 0:
            raise TransientNetworkFailure("empty response body")
