"""
Scoring Client

Sends encoded feature vectors to the external model endpoint with a hard
timeout, bounded retries and a per-endpoint circuit breaker.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import aiohttp
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..core import metrics
from ..core.errors import (
    CircuitOpenError,
    ScoringError,
    ScoringResponseError,
    ScoringTimeoutError,
    ScoringUnavailableError,
)
from ..core.models import FeatureVector, ScoreResult


class CircuitState(Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


_STATE_GAUGE_VALUE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}


class CircuitBreaker:
    """
    Fail-fast guard for one endpoint.

    CLOSED: calls pass; `failure_threshold` consecutive failures open it.
    OPEN: calls are rejected until `reset_timeout` has elapsed.
    HALF_OPEN: a single probe is let through; its outcome closes or re-opens.

    `before_call()` returns True for the probe. Callers hand that token back
    to `record_success`, `record_failure` or `abandon_probe`, so a call that
    was admitted while closed cannot settle the half-open state.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self.open_count = 0

        self.logger = logging.getLogger(__name__)
        self._publish_state()

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def _cooldown_elapsed(self) -> bool:
        return self.clock() - self._opened_at >= self.reset_timeout

    def before_call(self) -> bool:
        """
        Admit a call or raise CircuitOpenError

        Returns:
            True if the call is the half-open probe
        """
        state = self.state
        if state is CircuitState.CLOSED:
            return False
        if state is CircuitState.HALF_OPEN and not self._probe_in_flight:
            self._probe_in_flight = True
            return True
        retry_after = max(0.0, self.reset_timeout - (self.clock() - self._opened_at))
        raise CircuitOpenError(self.name, retry_after)

    def record_success(self, probe: bool = False):
        if probe:
            self._probe_in_flight = False
            self._consecutive_failures = 0
            self._transition(CircuitState.CLOSED)
        elif self._state is CircuitState.CLOSED:
            self._consecutive_failures = 0

    def abandon_probe(self, probe: bool = True):
        """Give back a half-open probe slot whose call was cancelled"""
        if probe:
            self._probe_in_flight = False

    def record_failure(self, probe: bool = False):
        self._consecutive_failures += 1
        if probe:
            self._probe_in_flight = False
        if probe or (
            self._state is CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            self._opened_at = self.clock()
            self.open_count += 1
            self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState):
        previous, self._state = self._state, state
        self.logger.warning(f"Circuit {self.name}: {previous.value} -> {state.value}")
        self._publish_state()

    def _publish_state(self):
        metrics.CIRCUIT_STATE.labels(endpoint=self.name).set(_STATE_GAUGE_VALUE[self._state])

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "consecutive_failures": self._consecutive_failures,
            "open_count": self.open_count,
        }


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ScoringError) and error.transient


class ScoringClient:
    """
    Async client for the model scoring endpoint

    Request:  {"model": ..., "vocabulary_version": ..., "features": [[index, weight], ...]}
    Response: {"score": float, "vocabulary_version": int}
    """

    def __init__(
        self,
        endpoint: str,
        model_id: str,
        timeout: float = 0.25,
        max_attempts: int = 3,
        backoff_base: float = 0.05,
        backoff_max: float = 1.0,
        max_in_flight: int = 64,
        breaker: Optional[CircuitBreaker] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        """
        Initialize the scoring client

        Args:
            endpoint: Scoring endpoint URL
            model_id: Model identifier sent with every request
            timeout: Hard timeout per attempt, in seconds
            max_attempts: Total attempts per event before giving up
            backoff_base: First backoff delay, doubled on each retry
            backoff_max: Upper bound on a single backoff delay
            max_in_flight: Concurrent requests admitted to the endpoint
            breaker: Circuit breaker; one is created per client if omitted
            session: Shared aiohttp session; one is created lazily if omitted
        """
        self.endpoint = endpoint
        self.model_id = model_id
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_in_flight = max_in_flight
        self.breaker = breaker or CircuitBreaker(endpoint)

        self._session = session
        self._owns_session = session is None
        self._admission = asyncio.Semaphore(max_in_flight)

        self.request_count = 0
        self.failure_count = 0
        self.in_flight = 0

        self.logger = logging.getLogger(__name__)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self.max_in_flight)
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        return self._session

    async def score(self, vector: FeatureVector, timeout: Optional[float] = None) -> ScoreResult:
        """
        Score a feature vector

        Args:
            vector: Encoded event
            timeout: Per-attempt timeout; defaults to the client's

        Returns:
            ScoreResult

        Raises:
            CircuitOpenError: the breaker rejected the call
            ScoringTimeoutError / ScoringUnavailableError: retries exhausted
            ScoringResponseError: the endpoint returned an unusable answer
        """
        timeout = self.timeout if timeout is None else timeout

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    self.logger.debug(f"Retrying event {vector.event_id} (attempt {attempt_number})")
                return await self._attempt(vector, timeout)

    async def _attempt(self, vector: FeatureVector, timeout: float) -> ScoreResult:
        probe = self.breaker.before_call()

        start_time = time.perf_counter()
        try:
            async with self._admission:
                self.in_flight += 1
                try:
                    body = await self._post(vector, timeout)
                finally:
                    self.in_flight -= 1
            result = self._parse(vector, body)
        except asyncio.CancelledError:
            self.breaker.abandon_probe(probe)
            raise
        except Exception:
            self.failure_count += 1
            self.breaker.record_failure(probe)
            raise
        finally:
            self.request_count += 1
            metrics.SCORING_LATENCY.observe(time.perf_counter() - start_time)

        self.breaker.record_success(probe)
        return result

    async def _post(self, vector: FeatureVector, timeout: float) -> Any:
        session = await self._get_session()
        payload = {
            "model": self.model_id,
            "vocabulary_version": vector.vocabulary_version,
            "features": vector.to_payload(),
        }
        try:
            async with session.post(
                self.endpoint,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout)
            ) as response:
                if response.status >= 500 or response.status == 429:
                    raise ScoringUnavailableError(
                        f"scoring endpoint returned HTTP {response.status}", response.status
                    )
                if response.status >= 400:
                    raise ScoringResponseError(f"scoring endpoint rejected request: HTTP {response.status}")
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise ScoringResponseError(f"invalid scoring response: {e}")
        except asyncio.TimeoutError:
            raise ScoringTimeoutError(f"scoring timed out after {timeout:.3f}s")
        except aiohttp.ClientError as e:
            raise ScoringUnavailableError(f"scoring endpoint unavailable: {e}")

    def _parse(self, vector: FeatureVector, body: Any) -> ScoreResult:
        if not isinstance(body, dict) or "score" not in body:
            raise ScoringResponseError(f"scoring response has no score: {body!r}")
        try:
            score = float(body["score"])
        except (TypeError, ValueError):
            raise ScoringResponseError(f"score is not a number: {body['score']!r}")
        if not 0.0 <= score <= 1.0:
            raise ScoringResponseError(f"score {score} outside [0, 1]")

        model_version = body.get("vocabulary_version")
        if model_version is not None:
            try:
                model_version = int(model_version)
            except (TypeError, ValueError):
                raise ScoringResponseError(f"invalid vocabulary_version: {model_version!r}")
            if model_version < vector.vocabulary_version:
                metrics.STALE_VOCABULARY.inc()
                self.logger.warning(
                    f"Event {vector.event_id} scored by model on vocabulary "
                    f"{model_version} < {vector.vocabulary_version}"
                )

        return ScoreResult(
            event_id=vector.event_id,
            score=score,
            vocabulary_version=vector.vocabulary_version,
            model_vocabulary_version=model_version,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "requests": self.request_count,
            "failures": self.failure_count,
            "in_flight": self.in_flight,
            "circuit": self.breaker.get_stats(),
        }

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None
