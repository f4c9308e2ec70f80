"""Admission facade: debit one token, then enqueue the generation job."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from generation_broker.accounts.models import TIER_JOB_PRIORITY
from generation_broker.accounts.repository import UserRepository
from generation_broker.config import AdmissionSettings
from generation_broker.errors import StoreUnavailableError
from generation_broker.jobs.models import JobCreate, JobView
from generation_broker.jobs.queue import JobQueue
from generation_broker.storage.common import translate_store_errors
from generation_broker.tokens.engine import TokenEconomy
from generation_broker.tokens.models import DenialReason

logger = logging.getLogger(__name__)

BASE_ESTIMATE_SECONDS = 30
CUSTOM_MODE_EXTRA_SECONDS = 15
LYRICS_EXTRA_SECONDS = 10
PER_MINUTE_EXTRA_SECONDS = 10
TOKENS_PER_JOB = 1


@dataclass(slots=True)
class GenerationRequest:
    """Caller-supplied generation parameters."""

    prompt: str
    style: str | None = None
    title: str | None = None
    model: str | None = None
    custom_mode: bool = False
    instrumental: bool = False
    lyrics: str | None = None
    gender: str | None = None
    duration: int | None = None

    def validate(self) -> None:
        if not self.prompt.strip():
            raise ValueError("Generation prompt must not be empty.")
        if self.duration is not None and self.duration <= 0:
            raise ValueError(f"Duration must be > 0 seconds, got {self.duration}")

    def to_payload(self) -> dict[str, Any]:
        """Provider request body; unset optional fields are omitted."""

        payload: dict[str, Any] = {
            "prompt": self.prompt.strip(),
            "custom_mode": self.custom_mode,
            "instrumental": self.instrumental,
        }
        for key, value in (
            ("style", self.style),
            ("title", self.title),
            ("model", self.model),
            ("lyrics", self.lyrics),
            ("gender", self.gender),
            ("duration", self.duration),
        ):
            if value is not None:
                payload[key] = value
        return payload


@dataclass(slots=True)
class Admission:
    """Accepted submission."""

    job_id: str
    day_key: str
    priority: int
    estimated_seconds: int
    timeout_seconds: int
    tokens_remaining: int

    @property
    def ok(self) -> bool:
        return True


@dataclass(slots=True)
class Denial:
    """Refused submission; no job was created and no token was debited."""

    reason: DenialReason
    message: str

    @property
    def ok(self) -> bool:
        return False


def estimate_seconds(request: GenerationRequest) -> int:
    """Rough generation time used for the caller hint and the provider timeout."""

    estimate = BASE_ESTIMATE_SECONDS
    if request.custom_mode:
        estimate += CUSTOM_MODE_EXTRA_SECONDS
    if request.lyrics:
        estimate += LYRICS_EXTRA_SECONDS
    if request.duration and request.duration > 60:
        estimate += (request.duration // 60) * PER_MINUTE_EXTRA_SECONDS
    return estimate


def derive_timeout_seconds(estimated_seconds: int, settings: AdmissionSettings) -> int:
    timeout = int(estimated_seconds * settings.timeout_multiplier)
    return max(settings.min_timeout_seconds, min(settings.max_timeout_seconds, timeout))


class AdmissionService:
    """Entry point for callers: admission control in front of the job queue."""

    def __init__(
        self,
        *,
        users: UserRepository,
        economy: TokenEconomy,
        queue: JobQueue,
        settings: AdmissionSettings | None = None,
        max_attempts: int = 3,
    ) -> None:
        self.users = users
        self.economy = economy
        self.queue = queue
        self.settings = settings or AdmissionSettings()
        self.max_attempts = max_attempts

    def submit(self, user_id: str, request: GenerationRequest) -> Admission | Denial:
        """Reserve one token and enqueue the job, or return a denial."""

        request.validate()
        with translate_store_errors("submit"):
            user = self.users.get_user(user_id)
        if user is None:
            return Denial(reason=DenialReason.UNKNOWN_USER, message=f"Unknown user {user_id}")
        if not user.active:
            return Denial(reason=DenialReason.USER_INACTIVE, message=f"User {user_id} is inactive")

        day_key = self.economy.clock.day_key()
        self.economy.ensure_daily_pool(day_key)
        reservation = self.economy.reserve(user_id, day_key, TOKENS_PER_JOB)
        if not reservation.ok and reservation.reason == DenialReason.NO_ALLOCATION:
            # Registered after today's allocation pass.
            self.economy.allocate_user(user_id=user_id, tier=user.tier, day_key=day_key)
            reservation = self.economy.reserve(user_id, day_key, TOKENS_PER_JOB)
        if not reservation.ok:
            reason = reservation.reason or DenialReason.INSUFFICIENT_TOKENS
            return Denial(reason=reason, message=_denial_message(reason, user_id, day_key))

        estimated = estimate_seconds(request)
        timeout_seconds = derive_timeout_seconds(estimated, self.settings)
        priority = TIER_JOB_PRIORITY[user.tier]
        try:
            job = self.queue.enqueue(
                JobCreate(
                    user_id=user_id,
                    day_key=day_key,
                    payload=request.to_payload(),
                    priority=priority,
                    max_attempts=self.max_attempts,
                    timeout_seconds=timeout_seconds,
                ),
            )
        except Exception:
            self._reverse_debit(user_id=user_id, day_key=day_key)
            raise

        allocation = reservation.allocation
        return Admission(
            job_id=job.job_id,
            day_key=day_key,
            priority=priority,
            estimated_seconds=estimated,
            timeout_seconds=timeout_seconds,
            tokens_remaining=allocation.remaining if allocation is not None else 0,
        )

    def get_status(self, job_id: str) -> JobView | None:
        return self.queue.status(job_id)

    def _reverse_debit(self, *, user_id: str, day_key: str) -> None:
        try:
            self.economy.refund(user_id, day_key, TOKENS_PER_JOB)
        except StoreUnavailableError:
            logger.exception(
                "Could not reverse token debit for user %s on %s after enqueue failure",
                user_id,
                day_key,
            )


def _denial_message(reason: DenialReason, user_id: str, day_key: str) -> str:
    if reason == DenialReason.INSUFFICIENT_TOKENS:
        return f"User {user_id} has no tokens left for {day_key}"
    if reason == DenialReason.USER_INACTIVE:
        return f"User {user_id} is inactive"
    if reason == DenialReason.UNKNOWN_USER:
        return f"Unknown user {user_id}"
    return f"User {user_id} has no allocation for {day_key}"
