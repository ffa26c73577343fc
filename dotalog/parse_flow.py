"""Interactive "request parse -> poll -> fetch -> reconcile" flow against OpenDota.

OpenDota parses replays asynchronously: a parse request returns a job id,
the job is polled until it disappears, then the full match can be fetched.
The flow runs on the event loop; blocking provider calls are pushed to
worker threads and all of them share the client's rate limiter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from dotalog.database import Database
from dotalog.opendota import OpenDotaClient
from dotalog.reconciler import MatchDataReconciler, ReconcileResult

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLL_ATTEMPTS = 60


class ParseState(str, Enum):
    IDLE = "idle"
    REQUESTING_PARSE = "requesting_parse"
    POLLING = "polling"
    FETCHING_DATA = "fetching_data"


class ParseCancelled(Exception):
    """The caller asked to stop before any data was written."""


class ParseTimeoutError(RuntimeError):
    pass


@dataclass
class ParseOutcome:
    match_id: int
    dota_match_id: int
    job_id: Optional[str]
    poll_attempts: int
    result: ReconcileResult


class ParseOrchestrator:
    def __init__(
        self,
        db: Database,
        client: OpenDotaClient,
        reconciler: Optional[MatchDataReconciler] = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS,
        on_state_change: Optional[Callable[[ParseState], Any]] = None,
    ):
        self.db = db
        self.client = client
        self.reconciler = reconciler or MatchDataReconciler(db)
        self.poll_interval_seconds = poll_interval_seconds
        self.max_poll_attempts = max_poll_attempts
        self.on_state_change = on_state_change
        self.state = ParseState.IDLE

    async def _set_state(self, state: ParseState) -> None:
        self.state = state
        if self.on_state_change is not None:
            maybe = self.on_state_change(state)
            if inspect.isawaitable(maybe):
                await maybe

    @staticmethod
    def _check_cancelled(stop_event: Optional[asyncio.Event]) -> None:
        if stop_event is not None and stop_event.is_set():
            raise ParseCancelled()

    async def _wait_interval(self, stop_event: Optional[asyncio.Event]) -> None:
        if stop_event is None:
            await asyncio.sleep(self.poll_interval_seconds)
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self, match_id: int, stop_event: Optional[asyncio.Event] = None) -> ParseOutcome:
        """
        Drive one match through request, poll, fetch and reconcile.

        Cancellation via ``stop_event`` is honoured up to the moment data
        has been fetched; after that the save runs to completion, so a
        cancelled run never leaves a half-applied reconciliation.

        Raises:
            ValueError: Unknown match or match without a lobby id
            OpenDotaError: Provider call failed
            ParseTimeoutError: Job still pending after ``max_poll_attempts``
            ParseCancelled: ``stop_event`` was set
        """
        match = self.db.get_match(match_id)
        if match is None:
            raise ValueError(f"Match {match_id} not found")
        dota_match_id = match.get("dota_match_id")
        if not dota_match_id:
            raise ValueError(f"Match {match_id} has no Dota match id")

        try:
            self._check_cancelled(stop_event)
            await self._set_state(ParseState.REQUESTING_PARSE)
            job_id = await asyncio.to_thread(self.client.request_parse, dota_match_id)
            self._check_cancelled(stop_event)

            await self._set_state(ParseState.POLLING)
            attempts = await self._poll(job_id, stop_event)

            self._check_cancelled(stop_event)
            await self._set_state(ParseState.FETCHING_DATA)
            match_data = await asyncio.to_thread(self.client.fetch_match, dota_match_id)
            self._check_cancelled(stop_event)

            result = self.reconciler.save_match_data(match_id, match_data)
            logger.info(
                "Parsed lobby %s after %s polls: %s/%s players updated",
                dota_match_id,
                attempts,
                result.updated_count,
                result.total_count,
            )
            return ParseOutcome(
                match_id=match_id,
                dota_match_id=dota_match_id,
                job_id=job_id,
                poll_attempts=attempts,
                result=result,
            )
        finally:
            await self._set_state(ParseState.IDLE)

    async def _poll(self, job_id: Optional[str], stop_event: Optional[asyncio.Event]) -> int:
        if job_id is None:
            # OpenDota had nothing to queue (already parsed)
            return 0
        for attempt in range(1, self.max_poll_attempts + 1):
            self._check_cancelled(stop_event)
            await self._wait_interval(stop_event)
            self._check_cancelled(stop_event)
            payload = await asyncio.to_thread(self.client.get_parse_job, job_id)
            self._check_cancelled(stop_event)
            if not self.client.is_job_pending(payload):
                return attempt
            logger.debug("Parse job %s still pending (poll %s)", job_id, attempt)
        raise ParseTimeoutError(
            f"Parse job {job_id} still pending after {self.max_poll_attempts} polls"
        )
