"""
Glue between the host platform's scheduler/triggers and the RoundService.

* Installing the app schedules the daily job, which puts a fresh board on the post every day.
* A post created by the app account installs a game and schedules the recurring resolution job.
* Every run of those jobs calls into the RoundService for the post it was scheduled for.
"""

import logging
from typing import Any, Mapping, Optional, Protocol, Union

from pydantic import ValidationError

from src.api.models import CreatePostRequest, JobPayload, ResolutionResponse, RoundResponse
from src.core.config import Settings
from src.core.exceptions import GameError, InvalidRequestError, StoreUnavailableError
from src.db.keys import daily_job_key, job_key
from src.db.store import KeyValueStore
from src.services.round_service import RoundService

_log = logging.getLogger(__name__)

UPDATE_BOARD_JOB = "updateBoard"
DAILY_POST_JOB = "dailyPost"

# Placeholder under a job key while the job is being registered
PENDING_JOB = "pending"

JobResult = Union[ResolutionResponse, RoundResponse]


class Scheduler(Protocol):
    """The host's job scheduler."""

    def schedule_recurring(
        self, cron: str, job_name: str, payload: Mapping[str, Any]
    ) -> str:
        """Register a recurring job and return its id."""
        ...


class RoundJobs:
    def __init__(
        self,
        service: RoundService,
        scheduler: Scheduler,
        store: KeyValueStore,
        settings: Optional[Settings] = None,
    ) -> None:
        self.service = service
        self.scheduler = scheduler
        self.store = store
        self.settings = settings or service.settings

    def on_app_install(self, instance_id: str) -> Optional[str]:
        """Schedule the daily new-game job. Returns the job id, or None if it was already scheduled."""
        payload = JobPayload(instance_id=instance_id).to_payload()
        return self._schedule_once(
            daily_job_key(instance_id), self.settings.daily_post_cron, DAILY_POST_JOB, payload
        )

    def on_post_create(
        self, request: CreatePostRequest, author: Optional[str]
    ) -> Optional[RoundResponse]:
        """Only posts submitted by the app itself host a game."""
        if author != self.settings.app_account:
            _log.info("Post %s was created by %r, not by the app: ignored", request.instance_id, author)
            return None

        response = self.service.install_game(request)
        self._schedule_once(
            job_key(request.instance_id),
            self.settings.resolution_cron,
            UPDATE_BOARD_JOB,
            JobPayload(instance_id=request.instance_id).to_payload(),
        )
        return response

    def on_run(self, job_name: str, payload: Mapping[str, Any]) -> Optional[JobResult]:
        """
        Scheduled job fired.
        ----
        A failing round must never take the job down: domain errors are logged and the next run tries again.
        Only an unreachable store propagates, so the scheduler sees the run failed.
        """
        if job_name not in (UPDATE_BOARD_JOB, DAILY_POST_JOB):
            raise InvalidRequestError(f"Unknown job: {job_name!r}")
        try:
            job = JobPayload.model_validate(dict(payload))
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid payload for {job_name}: {exc}") from exc

        try:
            if job_name == DAILY_POST_JOB:
                return self.service.start_new_game(job.instance_id)
            return self.service.tick(job.instance_id)
        except StoreUnavailableError:
            raise
        except GameError as exc:
            _log.error("%s for %s failed: %s", job_name, job.instance_id, exc)
            return None

    def _schedule_once(
        self, key: str, cron: str, job_name: str, payload: Mapping[str, Any]
    ) -> Optional[str]:
        """
        Register a job unless one is already registered under `key`.
        The key is claimed with compare-and-set before scheduling, so concurrent triggers schedule only once.
        """
        if not self.store.compare_and_set(key, None, PENDING_JOB):
            _log.info("%s already scheduled (%s)", job_name, key)
            return None
        try:
            job_id = self.scheduler.schedule_recurring(cron, job_name, payload)
        except Exception:
            # release the claim so the next trigger can try again
            self.store.delete(key)
            raise
        # kept in case the job has to be cancelled
        self.store.set(key, job_id)
        _log.info("Scheduled %s (%s) under %s", job_name, job_id, key)
        return job_id
