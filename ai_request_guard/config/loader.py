"""
Configuration management and loading.

Handles orchestrator settings from YAML and environment variables. API keys
are never read from YAML; the provider SDKs read them from the environment.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from ai_request_guard.core.backoff import RetryStrategy
from ai_request_guard.core.cache import DEFAULT_CAPACITY, DEFAULT_TTL_SECONDS
from ai_request_guard.core.errors import ConfigurationError
from ai_request_guard.core.pricing import ModelPricing, PricingTable, default_pricing_table
from ai_request_guard.core.recovery import RecoveryPolicy
from ai_request_guard.core.request import DEFAULT_TIMEOUT_TICKS, CallType, Priority
from ai_request_guard.core.request_queue import QueueLimits


class ProviderType(Enum):
    """Supported network providers."""
    OPENAI = "openai"
    OLLAMA = "ollama"


class ReplayMode(Enum):
    """Whether calls are recorded, served from a recording, or neither."""
    OFF = "off"
    RECORD = "record"
    REPLAY = "replay"


DEFAULT_MODELS = {
    ProviderType.OPENAI: "gpt-3.5-turbo",
    ProviderType.OLLAMA: "gemma3:12b",
}

DEFAULT_OLLAMA_HOST = "http://localhost:11434"


@dataclass(frozen=True)
class SimulationConfig:
    """Tick rate used to derive the simulation clock."""
    ticks_per_second: int = 60

    def __post_init__(self):
        if self.ticks_per_second <= 0:
            raise ValueError("ticks_per_second must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: float = 60.0

    def __post_init__(self):
        if self.requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Retry, backoff and fallback behavior."""
    max_retries: int = 3
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    jitter: bool = True
    jitter_factor: float = 0.1
    fallback_to_offline: bool = True
    use_stale_cache_on_failure: bool = False

    def __post_init__(self):
        if not 0 <= self.max_retries <= 10:
            raise ValueError("max_retries must be between 0 and 10")
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be > 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if not 0 <= self.jitter_factor <= 1:
            raise ValueError("jitter_factor must be between 0 and 1")


@dataclass(frozen=True)
class CacheConfig:
    capacity: int = DEFAULT_CAPACITY
    ttl_seconds: Mapping[CallType, float] = field(default_factory=lambda: dict(DEFAULT_TTL_SECONDS))

    def __post_init__(self):
        if self.capacity < 1:
            raise ValueError("cache capacity must be >= 1")
        for call_type, ttl in self.ttl_seconds.items():
            if ttl < 0:
                raise ValueError(f"ttl for {call_type.value} cannot be negative")


@dataclass(frozen=True)
class QueueConfig:
    """Lane capacities, dispatch batch size and per-priority timeouts."""
    urgent: int = 5
    standard: int = 3
    background: int = 10
    total: int = 15
    max_dispatch_per_tick: int = 3
    timeout_ticks: Mapping[Priority, int] = field(default_factory=lambda: dict(DEFAULT_TIMEOUT_TICKS))

    def __post_init__(self):
        if self.max_dispatch_per_tick < 1:
            raise ValueError("max_dispatch_per_tick must be >= 1")
        for priority, ticks in self.timeout_ticks.items():
            if ticks < 0:
                raise ValueError(f"timeout for {priority.name.lower()} cannot be negative")
        # Validates the capacities
        self.limits()

    def limits(self) -> QueueLimits:
        return QueueLimits(
            urgent=self.urgent,
            standard=self.standard,
            background=self.background,
            total=self.total,
        )


@dataclass(frozen=True)
class BudgetConfig:
    """Advisory cost ceiling."""
    limit_usd: Optional[float] = None
    alert_threshold: float = 0.8
    force_offline_when_exceeded: bool = False

    def __post_init__(self):
        if self.limit_usd is not None and self.limit_usd <= 0:
            raise ValueError("budget limit_usd must be > 0")
        if not 0 < self.alert_threshold <= 1:
            raise ValueError("alert_threshold must be in (0, 1]")


@dataclass(frozen=True)
class DegradedModeConfig:
    window_size: int = 100
    min_samples: int = 10
    error_rate_threshold: float = 0.5
    consecutive_error_limit: int = 5
    cooldown_seconds: float = 300.0

    def __post_init__(self):
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")
        if self.min_samples < 1:
            raise ValueError("min_samples must be >= 1")
        if not 0 < self.error_rate_threshold <= 1:
            raise ValueError("error_rate_threshold must be in (0, 1]")
        if self.consecutive_error_limit < 1:
            raise ValueError("consecutive_error_limit must be >= 1")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds cannot be negative")


@dataclass(frozen=True)
class ProviderConfig:
    """One network provider in the failover chain."""
    type: ProviderType
    model: str
    priority: int = 0
    timeout_seconds: float = 10.0
    base_url: Optional[str] = None

    def __post_init__(self):
        if not self.model or not self.model.strip():
            raise ValueError("provider model is required and cannot be empty")
        if not 0 < self.timeout_seconds <= 300:
            raise ValueError("timeout_seconds must be in (0, 300]")


@dataclass(frozen=True)
class FailoverConfig:
    failure_threshold: int = 3
    provider_cooldown_seconds: float = 60.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.provider_cooldown_seconds < 0:
            raise ValueError("provider_cooldown_seconds cannot be negative")


@dataclass(frozen=True)
class ReplayConfig:
    mode: ReplayMode = ReplayMode.RECORD
    strict: bool = True
    seed: int = 0
    log_path: Optional[str] = None


def _default_providers() -> Tuple[ProviderConfig, ...]:
    return (ProviderConfig(type=ProviderType.OPENAI, model=DEFAULT_MODELS[ProviderType.OPENAI]),)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Complete orchestrator configuration. Every section has defaults."""
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    degraded_mode: DegradedModeConfig = field(default_factory=DegradedModeConfig)
    providers: Tuple[ProviderConfig, ...] = field(default_factory=_default_providers)
    failover: FailoverConfig = field(default_factory=FailoverConfig)
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    pricing: Mapping[str, ModelPricing] = field(default_factory=dict)

    def recovery_policy(self) -> RecoveryPolicy:
        return RecoveryPolicy(
            max_retries=self.retry.max_retries,
            fallback_to_offline=self.retry.fallback_to_offline,
            window_size=self.degraded_mode.window_size,
            min_samples=self.degraded_mode.min_samples,
            error_rate_threshold=self.degraded_mode.error_rate_threshold,
            consecutive_error_limit=self.degraded_mode.consecutive_error_limit,
            degraded_cooldown_seconds=self.degraded_mode.cooldown_seconds,
            provider_failure_threshold=self.failover.failure_threshold,
            provider_cooldown_seconds=self.failover.provider_cooldown_seconds,
        )

    def pricing_table(self) -> PricingTable:
        """Bundled pricing with configured models registered on top."""
        table = default_pricing_table()
        for model, pricing in self.pricing.items():
            table.register(model, pricing)
        return table


_SECTIONS = {
    'simulation', 'rate_limit', 'retry', 'cache', 'queue', 'budget',
    'degraded_mode', 'providers', 'failover', 'replay', 'pricing',
}


def load_config(path: str) -> OrchestratorConfig:
    """Load and validate orchestrator configuration from a YAML file.

    Strict validation: unknown keys anywhere are rejected so that a typo
    never silently falls back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated OrchestratorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    return parse_config(raw_config)


def parse_config(raw_config: Mapping) -> OrchestratorConfig:
    """Build a validated config from already-parsed YAML data."""
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - _SECTIONS
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown_keys)}")

    try:
        return OrchestratorConfig(
            simulation=SimulationConfig(**_section(raw_config, 'simulation', {'ticks_per_second'})),
            rate_limit=RateLimitConfig(**_section(raw_config, 'rate_limit', {'requests_per_minute'})),
            retry=_parse_retry(raw_config),
            cache=_parse_cache(raw_config),
            queue=_parse_queue(raw_config),
            budget=_parse_budget(raw_config),
            degraded_mode=DegradedModeConfig(**_section(raw_config, 'degraded_mode', {
                'window_size', 'min_samples', 'error_rate_threshold',
                'consecutive_error_limit', 'cooldown_seconds',
            })),
            providers=_parse_providers(raw_config),
            failover=FailoverConfig(**_section(raw_config, 'failover', {
                'failure_threshold', 'provider_cooldown_seconds',
            })),
            replay=_parse_replay(raw_config),
            pricing=_parse_pricing(raw_config),
        )
    except ConfigurationError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigurationError(str(e))


def _section(raw_config: Mapping, name: str, allowed_keys: set) -> dict:
    """Return a section as a dict, rejecting unknown keys."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigurationError(f"Unknown {name} keys: {sorted(unknown_keys)}")
    return dict(data)


def _require_bool(data: dict, key: str, path: str) -> None:
    if key in data and not isinstance(data[key], bool):
        raise ConfigurationError(f"'{key}' in {path} must be true or false")


def _parse_enum(enum_cls, value, path: str):
    if not isinstance(value, str):
        raise ConfigurationError(f"'{path}' must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid_values = [member.value for member in enum_cls]
        raise ConfigurationError(f"'{path}' must be one of: {valid_values}")


def _parse_retry(raw_config: Mapping) -> RetryConfig:
    data = _section(raw_config, 'retry', {
        'max_retries', 'strategy', 'base_delay_ms', 'max_delay_ms', 'jitter',
        'jitter_factor', 'fallback_to_offline', 'use_stale_cache_on_failure',
    })
    for key in ('jitter', 'fallback_to_offline', 'use_stale_cache_on_failure'):
        _require_bool(data, key, 'retry')
    if 'strategy' in data:
        data['strategy'] = _parse_enum(RetryStrategy, data['strategy'], 'retry.strategy')
    return RetryConfig(**data)


def _parse_cache(raw_config: Mapping) -> CacheConfig:
    data = _section(raw_config, 'cache', {'capacity', 'ttl_seconds'})
    if 'ttl_seconds' in data:
        ttl_data = data['ttl_seconds']
        if not isinstance(ttl_data, dict):
            raise ConfigurationError("'cache.ttl_seconds' must be a dictionary")
        ttl_seconds = dict(DEFAULT_TTL_SECONDS)
        for name, ttl in ttl_data.items():
            call_type = _parse_enum(CallType, name, f"cache.ttl_seconds.{name}")
            ttl_seconds[call_type] = float(ttl)
        data['ttl_seconds'] = ttl_seconds
    return CacheConfig(**data)


def _parse_queue(raw_config: Mapping) -> QueueConfig:
    data = _section(raw_config, 'queue', {
        'urgent', 'standard', 'background', 'total', 'max_dispatch_per_tick', 'timeout_ticks',
    })
    if 'timeout_ticks' in data:
        timeout_data = data['timeout_ticks']
        if not isinstance(timeout_data, dict):
            raise ConfigurationError("'queue.timeout_ticks' must be a dictionary")
        timeout_ticks = dict(DEFAULT_TIMEOUT_TICKS)
        for name, ticks in timeout_data.items():
            if not isinstance(name, str) or name.upper() not in Priority.__members__:
                valid = [priority.name.lower() for priority in Priority]
                raise ConfigurationError(f"'queue.timeout_ticks' keys must be one of: {valid}")
            timeout_ticks[Priority[name.upper()]] = int(ticks)
        data['timeout_ticks'] = timeout_ticks
    return QueueConfig(**data)


def _parse_budget(raw_config: Mapping) -> BudgetConfig:
    data = _section(raw_config, 'budget', {'limit_usd', 'alert_threshold', 'force_offline_when_exceeded'})
    _require_bool(data, 'force_offline_when_exceeded', 'budget')
    if data.get('limit_usd') is not None:
        data['limit_usd'] = float(data['limit_usd'])
    return BudgetConfig(**data)


def _parse_providers(raw_config: Mapping) -> Tuple[ProviderConfig, ...]:
    if 'providers' not in raw_config:
        return _default_providers()

    providers_data = raw_config['providers'] or []
    if not isinstance(providers_data, list):
        raise ConfigurationError("'providers' must be a list")

    allowed_keys = {'type', 'model', 'priority', 'timeout_seconds', 'base_url'}
    providers = []
    for index, provider_data in enumerate(providers_data):
        path = f"providers[{index}]"
        if not isinstance(provider_data, dict):
            raise ConfigurationError(f"{path} must be a dictionary")
        unknown_keys = set(provider_data.keys()) - allowed_keys
        if unknown_keys:
            raise ConfigurationError(f"Unknown keys in {path}: {sorted(unknown_keys)}")
        if 'type' not in provider_data:
            raise ConfigurationError(f"Missing required 'type' in {path}")

        data = dict(provider_data)
        data['type'] = _parse_enum(ProviderType, data['type'], f"{path}.type")
        data.setdefault('model', DEFAULT_MODELS[data['type']])
        data.setdefault('priority', index)
        if data['type'] == ProviderType.OLLAMA:
            data.setdefault('base_url', DEFAULT_OLLAMA_HOST)
        providers.append(ProviderConfig(**data))

    return tuple(sorted(providers, key=lambda p: p.priority))


def _parse_replay(raw_config: Mapping) -> ReplayConfig:
    data = _section(raw_config, 'replay', {'mode', 'strict', 'seed', 'log_path'})
    _require_bool(data, 'strict', 'replay')
    if 'mode' in data:
        # YAML reads a bare `off` as False
        mode = 'off' if data['mode'] is False else data['mode']
        data['mode'] = _parse_enum(ReplayMode, mode, 'replay.mode')
    if 'seed' in data:
        data['seed'] = int(data['seed'])
    return ReplayConfig(**data)


def _parse_pricing(raw_config: Mapping) -> Dict[str, ModelPricing]:
    pricing_data = raw_config.get('pricing') or {}
    if not isinstance(pricing_data, dict):
        raise ConfigurationError("'pricing' must be a dictionary")

    pricing = {}
    for model, rates in pricing_data.items():
        path = f"pricing.{model}"
        if not isinstance(rates, dict):
            raise ConfigurationError(f"'{path}' must be a dictionary")
        unknown_keys = set(rates.keys()) - {'input_per_1k', 'completion_per_1k'}
        if unknown_keys:
            raise ConfigurationError(f"Unknown keys in {path}: {sorted(unknown_keys)}")
        for key in ('input_per_1k', 'completion_per_1k'):
            if key not in rates:
                raise ConfigurationError(f"Missing required '{key}' in {path}")
            if not isinstance(rates[key], (int, float)):
                raise ConfigurationError(f"'{key}' in {path} must be a number")
        pricing[str(model)] = ModelPricing(
            input_cost_per_1k=Decimal(str(rates['input_per_1k'])),
            completion_cost_per_1k=Decimal(str(rates['completion_per_1k'])),
        )
    return pricing


def load_config_with_environment(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> OrchestratorConfig:
    """Load configuration, then apply environment overrides.

    Recognized variables: LLM_PROVIDER, LLM_MODEL, LLM_TIMEOUT_SECONDS,
    LLM_RATE_LIMIT_PER_MINUTE, LLM_MAX_RETRIES, OLLAMA_HOST.
    """
    config = load_config(path) if path else OrchestratorConfig()
    return apply_environment(config, os.environ if environ is None else environ)


def apply_environment(config: OrchestratorConfig, environ: Mapping[str, str]) -> OrchestratorConfig:
    providers = list(config.providers)

    preferred = environ.get('LLM_PROVIDER')
    if preferred:
        provider_type = _parse_enum(ProviderType, preferred, 'LLM_PROVIDER')
        matching = [p for p in providers if p.type == provider_type]
        if not matching:
            matching = [ProviderConfig(
                type=provider_type,
                model=DEFAULT_MODELS[provider_type],
                base_url=DEFAULT_OLLAMA_HOST if provider_type == ProviderType.OLLAMA else None,
            )]
        others = [p for p in providers if p.type != provider_type]
        providers = [replace(p, priority=index) for index, p in enumerate(matching + others)]

    try:
        if providers and environ.get('LLM_MODEL'):
            providers[0] = replace(providers[0], model=environ['LLM_MODEL'])
        if providers and environ.get('LLM_TIMEOUT_SECONDS'):
            providers[0] = replace(providers[0], timeout_seconds=float(environ['LLM_TIMEOUT_SECONDS']))
        if environ.get('OLLAMA_HOST'):
            providers = [
                replace(p, base_url=environ['OLLAMA_HOST']) if p.type == ProviderType.OLLAMA else p
                for p in providers
            ]

        rate_limit = config.rate_limit
        if environ.get('LLM_RATE_LIMIT_PER_MINUTE'):
            rate_limit = RateLimitConfig(requests_per_minute=float(environ['LLM_RATE_LIMIT_PER_MINUTE']))

        retry = config.retry
        if environ.get('LLM_MAX_RETRIES'):
            retry = replace(retry, max_retries=int(environ['LLM_MAX_RETRIES']))
    except ValueError as e:
        raise ConfigurationError(f"Invalid environment override: {e}")

    return replace(config, providers=tuple(providers), rate_limit=rate_limit, retry=retry)
