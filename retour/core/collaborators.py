"""External collaborator protocols and the bounded-retry call wrapper.

Generation and judge services are black boxes: fallible, slow and
non-deterministic.  Every call runs under a wall-clock budget and is
retried with exponential backoff a small, bounded number of times.  A
call that still fails surfaces as ``CollaboratorError`` carrying the run,
step and attempt it belonged to.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from retour.models.artifacts import Artifact

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CollaboratorError(RuntimeError):
    """An external collaborator failed after all retries."""

    def __init__(
        self,
        message: str,
        *,
        run_id: str = "",
        step_id: int | None = None,
        attempt: int | None = None,
        service: str = "",
    ) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.step_id = step_id
        self.attempt = attempt
        self.service = service

    def context(self) -> str:
        return (
            f"service={self.service} run={self.run_id} step={self.step_id} "
            f"attempt={self.attempt}: {self}"
        )


class CollaboratorTimeoutError(CollaboratorError):
    """The collaborator exceeded its wall-clock budget."""


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    """What the generation service is asked to produce."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    step_id: int
    attempt: int
    input_artifact_ids: list[str] = []
    prompt: str = ""
    prompt_adjustments: list[str] = []
    settings: dict[str, Any] = {}
    seed: int | None = None


class GenerationResult(BaseModel):
    """A produced artifact plus its accompanying analysis document."""

    model_config = ConfigDict(frozen=True)

    artifact: Artifact
    analysis: dict[str, Any] = {}
    model_name: str = ""
    prompt_name: str | None = None
    # Typed step output to record on the run when the artifact is accepted.
    step_output: dict[str, Any] | None = None


class JudgeRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    step_id: int
    spaces: list[dict[str, Any]]
    user_request: str = ""
    style_constraints: list[str] = []
    policy_rules: list[str] = []
    already_reported: list[str] = []


class JudgeResponse(BaseModel):
    """Raw judge output; the validation engine normalizes it."""

    model_config = ConfigDict(frozen=True)

    failures: list[dict[str, Any]] = []
    fixes: list[dict[str, Any]] = []
    summary: str = ""
    model: str = Field(default="", description="model identifier reported by the judge")


@runtime_checkable
class GenerationService(Protocol):
    def generate(self, request: GenerationRequest) -> GenerationResult:
        ...


@runtime_checkable
class JudgeService(Protocol):
    @property
    def model_name(self) -> str:
        ...

    def compare(self, request: JudgeRequest) -> JudgeResponse:
        ...


# ---------------------------------------------------------------------------
# Bounded retry with timeout
# ---------------------------------------------------------------------------


def backoff_delay(attempt: int, base: float = 2.0, cap: float = 30.0) -> float:
    """Exponential backoff: ``base * 2^(attempt-1)`` seconds, capped."""
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


class CollaboratorCaller:
    """Runs collaborator calls under a timeout with bounded retries.

    Parameters
    ----------
    timeout_seconds:
        Wall-clock budget per call.
    max_retries:
        Additional attempts after the first failure.
    backoff_base / backoff_max:
        Backoff parameters between attempts.
    sleep:
        Injected sleep function (tests pass a no-op).
    """

    def __init__(
        self,
        *,
        timeout_seconds: float,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._sleep = sleep

    def call(
        self,
        fn: Callable[[], T],
        *,
        service: str,
        run_id: str,
        step_id: int,
        attempt: int | None = None,
    ) -> T:
        """Invoke ``fn`` until it succeeds or the retry budget is spent.

        Raises
        ------
        CollaboratorTimeoutError
            If the final try timed out.
        CollaboratorError
            If the final try raised.
        """
        last_exc: Exception | None = None
        timed_out = False
        for try_index in range(1, self._max_retries + 2):
            try:
                return self._run_with_timeout(fn)
            except FutureTimeout as exc:
                last_exc, timed_out = exc, True
                logger.error(
                    "%s call timed out after %.1fs (run=%s step=%d try=%d)",
                    service, self._timeout, run_id, step_id, try_index,
                )
            except Exception as exc:  # noqa: BLE001
                last_exc, timed_out = exc, False
                logger.error(
                    "%s call failed (run=%s step=%d try=%d): %s",
                    service, run_id, step_id, try_index, exc,
                )
            if try_index <= self._max_retries:
                self._sleep(backoff_delay(try_index, self._backoff_base, self._backoff_max))

        error_cls = CollaboratorTimeoutError if timed_out else CollaboratorError
        detail = (
            f"timed out after {self._timeout}s" if timed_out else str(last_exc)
        )
        raise error_cls(
            f"{service} failed after {self._max_retries + 1} tries: {detail}",
            run_id=run_id,
            step_id=step_id,
            attempt=attempt,
            service=service,
        ) from last_exc

    def _run_with_timeout(self, fn: Callable[[], T]) -> T:
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(fn)
            return future.result(timeout=self._timeout)
        finally:
            # Do not wait for a hung call; the worker thread is abandoned.
            executor.shutdown(wait=False)
