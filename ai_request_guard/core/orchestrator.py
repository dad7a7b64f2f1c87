"""
Request orchestration.

Ties the queue, rate limiter, cache, failover chain, recovery manager, usage
tracker and replay log together behind ``submit``, ``call`` and
``process_queue``. Everything runs on the caller's thread, driven by the
simulation tick: the tick is the clock, so a replayed session with the same
tick sequence makes the same gating decisions.
"""

import itertools
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from ai_request_guard.config.loader import OrchestratorConfig, ReplayMode
from ai_request_guard.providers.base import LLMProvider, ProviderResponse
from ai_request_guard.storage.repository import UsageRepository

from .backoff import BackoffCalculator
from .cache import CachedPayload, ResponseCache
from .errors import ConfigurationError, ErrorType, LLMError, ReplayDivergenceError
from .failover import FailoverChain
from .offline import PROVIDER_NAME as OFFLINE_PROVIDER
from .offline import OfflineFallbackProvider
from .rate_limiter import TokenBucketRateLimiter
from .recovery import ErrorRecoveryManager, RecoveryAction
from .replay import CallRecord, DeterministicRandom, Divergence, ReplayLogger, ReplayValidator
from .request import DEFAULT_PRIORITY_BY_CALL_TYPE, CallType, Priority, Request, make_cache_key
from .request_queue import PriorityRequestQueue
from .usage import UsageTracker

logger = logging.getLogger(__name__)

STALE_CACHE_PROVIDER = "stale-cache"
_FALLBACK_PROVIDERS = {OFFLINE_PROVIDER, STALE_CACHE_PROVIDER}


class ResultSource(Enum):
    """Where the text of a result came from."""
    NETWORK = "network"
    CACHE = "cache"
    REPLAY = "replay"
    FALLBACK = "fallback"
    STALE_CACHE = "stale_cache"


class HandleStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass(frozen=True)
class GenerationResult:
    """Text delivered to the caller plus its accounting."""
    text: str
    call_type: CallType
    source: ResultSource
    provider: str
    model: str
    input_tokens: int
    completion_tokens: int
    latency_ms: int
    cost_usd: float
    attempt_number: int
    tick: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens

    @property
    def is_fallback(self) -> bool:
        return self.source in (ResultSource.FALLBACK, ResultSource.STALE_CACHE)


class RequestHandle:
    """Result slot for a submitted request.

    Callbacks run on the thread that calls ``process_queue``, during the tick
    that resolves the request.
    """

    def __init__(self, request: Request):
        self.request_id = request.id
        self.prompt = request.prompt
        self.call_type = request.call_type
        self.priority = request.priority
        self.status = HandleStatus.PENDING
        self.result: Optional[GenerationResult] = None
        self.error: Optional[LLMError] = None
        self._callbacks: List[Callable[["RequestHandle"], None]] = []

    def done(self) -> bool:
        return self.status != HandleStatus.PENDING

    def add_done_callback(self, callback: Callable[["RequestHandle"], None]) -> None:
        if self.done():
            callback(self)
        else:
            self._callbacks.append(callback)

    def _resolve(
        self,
        status: HandleStatus,
        result: Optional[GenerationResult] = None,
        error: Optional[LLMError] = None,
    ) -> None:
        if self.done():
            return
        self.status = status
        self.result = result
        self.error = error
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def __repr__(self) -> str:
        return f"RequestHandle(id={self.request_id}, {self.call_type.value}, {self.status.value})"


@dataclass(frozen=True)
class _Retry:
    action: RecoveryAction
    delay_ms: int


Outcome = Union[GenerationResult, _Retry, LLMError]


class RequestOrchestrator:
    """Single owner of all resilience state for one simulation.

    Construct one per simulation (or test fixture); nothing here is global.
    """

    def __init__(
        self,
        providers: Sequence[LLMProvider],
        config: Optional[OrchestratorConfig] = None,
        replay_source: Optional[ReplayLogger] = None,
        repository: Optional[UsageRepository] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Wire up every component.

        Args:
            providers: Network providers in failover order
            config: Orchestrator settings (defaults if omitted)
            replay_source: Recorded session to serve in replay mode; loaded
                from ``config.replay.log_path`` when omitted
            repository: Optional sqlite ledger for usage entries
            sleep: Blocks the caller of ``call`` while it waits

        Raises:
            ConfigurationError: If no providers are configured, or replay
                mode has nothing to replay
        """
        if not providers:
            raise ConfigurationError("No providers configured")

        self.config = config or OrchestratorConfig()
        self.current_tick = 0
        self._blocked_seconds = 0.0
        self._sleep = sleep

        replay_config = self.config.replay
        self.replay_logger = ReplayLogger(enabled=replay_config.mode != ReplayMode.OFF)
        self.validator: Optional[ReplayValidator] = None
        if replay_config.mode == ReplayMode.REPLAY:
            if replay_source is None:
                if not replay_config.log_path:
                    raise ConfigurationError("Replay mode requires a recorded replay log")
                replay_source = ReplayLogger.load_from_file(replay_config.log_path)
            self.validator = ReplayValidator.from_logger(replay_source, strict=replay_config.strict)
            self.validator.enable_replay_mode()
        self.random = DeterministicRandom(replay_config.seed, self.replay_logger, self.validator)

        retry = self.config.retry
        backoff = BackoffCalculator(
            base_delay_ms=retry.base_delay_ms,
            max_delay_ms=retry.max_delay_ms,
            strategy=retry.strategy,
            use_jitter=retry.jitter,
            jitter_factor=retry.jitter_factor,
            random_source=self.random.source("backoff", "jitter"),
        )
        self.recovery = ErrorRecoveryManager(self.config.recovery_policy(), backoff, self._now)
        self.chain = FailoverChain(
            recovery=self.recovery,
            offline=OfflineFallbackProvider(self.random.source("offline", "template")),
        )
        for priority, provider in enumerate(providers):
            self.chain.add_provider(provider, priority)

        self.rate_limiter = TokenBucketRateLimiter(self.config.rate_limit.requests_per_minute, self._now)
        self.cache = ResponseCache(self.config.cache.capacity, self.config.cache.ttl_seconds, self._now)
        self.queue = PriorityRequestQueue(self.config.queue.limits(), on_timeout=self._on_timeout)
        self.usage = UsageTracker(
            pricing=self.config.pricing_table(),
            budget_limit=self.config.budget.limit_usd,
            alert_threshold=self.config.budget.alert_threshold,
            repository=repository,
        )

        self._handles: Dict[int, RequestHandle] = {}
        self._ids = itertools.count(1)

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        replay_source: Optional[ReplayLogger] = None,
        repository: Optional[UsageRepository] = None,
    ) -> "RequestOrchestrator":
        """Build providers from the config and wire them up."""
        from ai_request_guard.providers.factory import create_providers

        return cls(create_providers(config.providers), config, replay_source, repository)

    # ------------------------------------------------------------------
    # Inbound interface
    # ------------------------------------------------------------------
    def submit(
        self,
        prompt: str,
        call_type: CallType = CallType.UNKNOWN,
        priority: Optional[Priority] = None,
    ) -> RequestHandle:
        """Queue a request without blocking.

        Returns:
            A new handle, the existing handle when the same (prompt, call type)
            pair is already pending, or a REJECTED handle when the queue is full
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        pending_id = self.queue.pending_request_id(make_cache_key(prompt, call_type))
        if pending_id is not None and pending_id in self._handles:
            logger.debug("Deduplicated %s request onto pending request %d", call_type.value, pending_id)
            return self._handles[pending_id]

        if priority is None:
            priority = DEFAULT_PRIORITY_BY_CALL_TYPE[call_type]
        request = Request(
            id=next(self._ids),
            priority=priority,
            prompt=prompt,
            call_type=call_type,
            enqueued_tick=self.current_tick,
            timeout_ticks=self.config.queue.timeout_ticks[priority],
            next_retry_tick=self.current_tick,
        )
        handle = RequestHandle(request)
        if not self.queue.enqueue(request):
            handle._resolve(HandleStatus.REJECTED)
            return handle

        logger.debug("Enqueued %s request %d at tick %d", call_type.value, request.id, self.current_tick)
        self._handles[request.id] = handle
        return handle

    def call(
        self,
        prompt: str,
        call_type: CallType = CallType.UNKNOWN,
        current_tick: Optional[int] = None,
    ) -> GenerationResult:
        """Generate text synchronously, blocking through rate limiting and retries.

        Time spent blocked advances the orchestrator clock along with the
        caller, so waits replay identically.

        Raises:
            LLMError: Only when offline fallback is disabled and the call fails
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if current_tick is not None:
            self._advance(current_tick)

        attempt = 0
        while True:
            self._wait_for_rate_limit()
            outcome = self._attempt(prompt, call_type, attempt)
            if isinstance(outcome, _Retry):
                if outcome.delay_ms:
                    self._block(outcome.delay_ms / 1000.0)
                attempt += 1
                continue
            if isinstance(outcome, LLMError):
                raise outcome
            return outcome

    def process_queue(self, current_tick: int) -> int:
        """Per-tick entry point: evict timeouts, then dispatch ready requests.

        At most one request per lane is dispatched, up to
        ``max_dispatch_per_tick`` in total, each admitted by the rate limiter.

        Returns:
            Number of requests dispatched this tick
        """
        self._advance(current_tick)
        self.queue.process_timeouts(current_tick)

        dispatched = 0
        for priority in Priority:
            if dispatched >= self.config.queue.max_dispatch_per_tick:
                break
            if not self.queue.has_ready_requests(current_tick, priority):
                continue
            if not self.rate_limiter.can_make_request():
                logger.debug(
                    "Rate limited at tick %d; next token in %.2fs",
                    current_tick,
                    self.rate_limiter.get_wait_time_seconds(),
                )
                break
            request = self.queue.dequeue_from(priority, current_tick)
            if request is None:
                continue
            self._dispatch(request)
            dispatched += 1
        return dispatched

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _dispatch(self, request: Request) -> None:
        logger.debug(
            "Dispatching %s request %d (attempt %d) at tick %d",
            request.call_type.value,
            request.id,
            request.attempt_count,
            self.current_tick,
        )
        try:
            outcome = self._attempt(request.prompt, request.call_type, request.attempt_count)
            if isinstance(outcome, _Retry):
                delay_ticks = math.ceil(outcome.delay_ms * self.config.simulation.ticks_per_second / 1000)
                retry = request.with_retry(self.current_tick + delay_ticks)
                if self.queue.enqueue(retry):
                    logger.debug("Request %d retries at tick %d", request.id, retry.next_retry_tick)
                    return
                outcome = self._fallback(
                    request.prompt,
                    request.call_type,
                    request.attempt_count,
                    reason="retry could not be re-enqueued",
                )
        except ReplayDivergenceError as exc:
            # The request is already out of the queue, so its handle is settled here
            self._complete(
                request.id,
                LLMError(
                    ErrorType.UNKNOWN,
                    str(exc),
                    attempt_number=request.attempt_count,
                    is_retryable=False,
                ),
            )
            raise
        self._complete(request.id, outcome)

    def _complete(self, request_id: int, outcome: Union[GenerationResult, LLMError]) -> None:
        handle = self._handles.pop(request_id, None)
        if handle is None:
            return
        if isinstance(outcome, LLMError):
            handle._resolve(HandleStatus.FAILED, error=outcome)
        else:
            handle._resolve(HandleStatus.COMPLETED, result=outcome)

    def _on_timeout(self, request: Request) -> None:
        handle = self._handles.pop(request.id, None)
        if handle is None:
            return
        handle._resolve(
            HandleStatus.TIMED_OUT,
            error=LLMError(
                ErrorType.TIMEOUT,
                f"Request {request.id} timed out in queue",
                attempt_number=request.attempt_count,
                is_retryable=False,
            ),
        )

    def _attempt(self, prompt: str, call_type: CallType, attempt: int) -> Outcome:
        """Resolve one attempt: cache, bypass modes, then the network."""
        key = make_cache_key(prompt, call_type)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s request", call_type.value)
            return GenerationResult(
                text=cached.text,
                call_type=call_type,
                source=ResultSource.CACHE,
                provider=cached.provider,
                model=cached.model,
                input_tokens=cached.input_tokens,
                completion_tokens=cached.completion_tokens,
                latency_ms=0,
                cost_usd=0.0,
                attempt_number=attempt,
                tick=self.current_tick,
            )

        if self.recovery.is_degraded():
            return self._fallback(prompt, call_type, attempt, reason="degraded mode")
        if self.config.budget.force_offline_when_exceeded and self.usage.is_budget_exceeded():
            return self._fallback(prompt, call_type, attempt, reason="budget exceeded")

        try:
            response, source = self._network_call(prompt, call_type, attempt)
        except LLMError as error:
            return self._recover(prompt, call_type, attempt, error)

        self.recovery.record_success()
        entry = self.usage.record_usage(
            response.model, call_type, response.input_tokens, response.completion_tokens, True
        )
        cost = entry.cost_usd if entry is not None else 0.0
        self._cache_response(key, call_type, response, cost)
        return self._result(response, call_type, source, cost, attempt)

    def _recover(self, prompt: str, call_type: CallType, attempt: int, error: LLMError) -> Outcome:
        self.usage.record_usage(error.model or error.provider or "unknown", call_type, 0, 0, False)
        action = self.recovery.handle_error(error, attempt)

        if action == RecoveryAction.RETRY_LATER:
            return _Retry(action, self.recovery.get_retry_delay_ms(attempt))
        if action == RecoveryAction.RETRY_IMMEDIATELY:
            return _Retry(action, 0)
        if action == RecoveryAction.FAIL:
            logger.error(
                "%s request failed on attempt %d: %s (%s)",
                call_type.value,
                attempt,
                error.error_type.value,
                error.message,
            )
            if not self.config.retry.fallback_to_offline:
                return error
            return self._fallback(prompt, call_type, attempt, reason=f"non-retryable {error.error_type.value}")
        return self._fallback(
            prompt,
            call_type,
            attempt,
            reason=f"{error.error_type.value} after {attempt + 1} attempts",
            allow_stale=True,
        )

    def _network_call(self, prompt: str, call_type: CallType, attempt: int) -> Tuple[ProviderResponse, ResultSource]:
        """One pass through the failover chain, or its recorded outcome.

        Appends exactly one call record whatever the outcome.

        Raises:
            LLMError: The attempt failed
        """
        tick = self.current_tick
        if self.validator is not None:
            source = ResultSource.REPLAY
            position = self.validator.cursor(tick, call_type)
            record = self.validator.get_next_replay_response(tick, call_type, prompt)
            if record is not None and record.provider in _FALLBACK_PROVIDERS:
                self.validator.report_divergence(Divergence(
                    tick=tick,
                    call_type=call_type,
                    position=position,
                    reason="recorded a fallback where the replay reached the network",
                ))
            response, error = self._replayed_outcome(record, tick, attempt)
        else:
            source = ResultSource.NETWORK
            try:
                response, _ = self.chain.try_providers(prompt)
                error = None
            except LLMError as e:
                response, error = None, e

        if error is not None:
            error.attempt_number = attempt
            self._log_call(tick, call_type, prompt, attempt, error=error)
            raise error
        self._log_call(tick, call_type, prompt, attempt, response=response)
        return response, source

    def _replayed_outcome(
        self,
        record: Optional[CallRecord],
        tick: int,
        attempt: int,
    ) -> Tuple[Optional[ProviderResponse], Optional[LLMError]]:
        if record is None:
            return None, LLMError(
                ErrorType.PROVIDER_UNAVAILABLE,
                f"No recorded call at tick {tick}",
                attempt_number=attempt,
            )
        if not record.success:
            return None, LLMError(
                record.error_type or ErrorType.UNKNOWN,
                record.error_message,
                http_status=record.http_status,
                attempt_number=attempt,
                provider=record.provider,
                model=record.model,
            )
        return _response_from_record(record), None

    def _fallback(
        self,
        prompt: str,
        call_type: CallType,
        attempt: int,
        reason: str,
        allow_stale: bool = False,
    ) -> GenerationResult:
        """Resolve without the network: stale cache if allowed, else offline text.

        Offline text is cached under the call type's TTL like a provider
        response. A stale entry is served as is and never refreshed.
        """
        logger.info("Using fallback for %s request (%s)", call_type.value, reason)
        tick = self.current_tick
        response: Optional[ProviderResponse] = None

        if self.validator is not None:
            position = self.validator.cursor(tick, call_type)
            record = self.validator.get_next_replay_response(tick, call_type, prompt)
            if record is not None:
                if record.provider not in _FALLBACK_PROVIDERS:
                    self.validator.report_divergence(Divergence(
                        tick=tick,
                        call_type=call_type,
                        position=position,
                        reason="recorded a network call where the replay fell back",
                    ))
                response = _response_from_record(record)

        if response is None:
            stale = None
            if allow_stale and self.config.retry.use_stale_cache_on_failure:
                stale = self.cache.get_stale(make_cache_key(prompt, call_type))
            if stale is not None:
                response = ProviderResponse(
                    text=stale.text,
                    input_tokens=stale.input_tokens,
                    completion_tokens=stale.completion_tokens,
                    latency_ms=0,
                    provider=STALE_CACHE_PROVIDER,
                    model=stale.model,
                )
            else:
                response = self.chain.offline_response(prompt, call_type)

        self._log_call(tick, call_type, prompt, attempt, response=response)
        if response.provider == STALE_CACHE_PROVIDER:
            # Already paid for when first fetched
            return self._result(response, call_type, ResultSource.STALE_CACHE, 0.0, attempt)

        entry = self.usage.record_usage(
            response.model, call_type, response.input_tokens, response.completion_tokens, True
        )
        cost = entry.cost_usd if entry is not None else 0.0
        self._cache_response(make_cache_key(prompt, call_type), call_type, response, cost)
        return self._result(response, call_type, ResultSource.FALLBACK, cost, attempt)

    def _cache_response(self, key: str, call_type: CallType, response: ProviderResponse, cost: float) -> None:
        self.cache.put(key, call_type, CachedPayload(
            text=response.text,
            input_tokens=response.input_tokens,
            completion_tokens=response.completion_tokens,
            cost_usd=cost,
            provider=response.provider,
            model=response.model,
        ))

    def _result(
        self,
        response: ProviderResponse,
        call_type: CallType,
        source: ResultSource,
        cost: float,
        attempt: int,
    ) -> GenerationResult:
        return GenerationResult(
            text=response.text,
            call_type=call_type,
            source=source,
            provider=response.provider,
            model=response.model,
            input_tokens=response.input_tokens,
            completion_tokens=response.completion_tokens,
            latency_ms=response.latency_ms,
            cost_usd=cost,
            attempt_number=attempt,
            tick=self.current_tick,
        )

    def _log_call(
        self,
        tick: int,
        call_type: CallType,
        prompt: str,
        attempt: int,
        response: Optional[ProviderResponse] = None,
        error: Optional[LLMError] = None,
    ) -> None:
        if not self.replay_logger.enabled:
            return
        if response is not None:
            record = CallRecord(
                tick=tick,
                call_type=call_type,
                prompt=prompt,
                output=response.text,
                input_tokens=response.input_tokens,
                completion_tokens=response.completion_tokens,
                latency_ms=response.latency_ms,
                provider=response.provider,
                success=True,
                attempt_number=attempt,
                random_seed=self.random.seed,
                model=response.model,
            )
        else:
            record = CallRecord(
                tick=tick,
                call_type=call_type,
                prompt=prompt,
                output="",
                input_tokens=0,
                completion_tokens=0,
                latency_ms=0,
                provider=error.provider or "",
                success=False,
                attempt_number=attempt,
                random_seed=self.random.seed,
                model=error.model or "",
                error_type=error.error_type,
                error_message=error.message,
                http_status=error.http_status,
            )
        self.replay_logger.record_call(record)

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------
    def _now(self) -> float:
        return self.current_tick / self.config.simulation.ticks_per_second + self._blocked_seconds

    def _advance(self, tick: int) -> None:
        if tick < self.current_tick:
            raise ValueError(f"tick went backwards ({tick} < {self.current_tick})")
        self.current_tick = tick
        self.random.tick = tick

    def _block(self, seconds: float) -> None:
        self._sleep(seconds)
        self._blocked_seconds += seconds

    def _wait_for_rate_limit(self) -> None:
        while not self.rate_limiter.can_make_request():
            # Floor keeps the clock moving when float error leaves a sliver short
            self._block(max(self.rate_limiter.get_wait_time_seconds(), 0.001))

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def pending_count(self) -> int:
        return self.queue.total_size()

    @property
    def divergences(self) -> List[Divergence]:
        return list(self.validator.divergences) if self.validator is not None else []

    def save_replay_log(self, path: Optional[str] = None) -> Path:
        target = path or self.config.replay.log_path
        if not target:
            raise ValueError("No replay log path given or configured")
        return self.replay_logger.save_to_file(target)

    def get_statistics(self) -> Dict[str, object]:
        stats: Dict[str, object] = {
            "tick": self.current_tick,
            "queue": {priority.name.lower(): self.queue.size(priority) for priority in Priority},
            "rate_limit_tokens": self.rate_limiter.get_available_tokens(),
            "cache": self.cache.get_statistics(),
            "errors": self.recovery.get_error_statistics(),
            "providers": self.chain.health_snapshot(),
            "usage": self.usage.get_summary(),
            "replay": self.replay_logger.get_statistics(),
        }
        if self.validator is not None:
            stats["replay_validation"] = self.validator.get_validation_stats()
        return stats


def _response_from_record(record: CallRecord) -> ProviderResponse:
    return ProviderResponse(
        text=record.output,
        input_tokens=record.input_tokens,
        completion_tokens=record.completion_tokens,
        latency_ms=record.latency_ms,
        provider=record.provider,
        model=record.model,
    )
