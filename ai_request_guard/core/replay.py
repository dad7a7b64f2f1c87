"""
Deterministic replay.

Recording side: every completed attempt produces one ``CallRecord`` keyed by
(tick, call type), and every random value consumed by jitter or template
selection produces one ``RandomDecisionRecord``.

Replay side: ``ReplayValidator`` serves recorded outcomes in the exact order
they were recorded, so no provider is contacted, and reports any prompt
mismatch as a divergence. Divergences are never silently ignored.
"""

import json
import logging
import random
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .errors import ErrorType, ReplayDivergenceError
from .request import CallType

logger = logging.getLogger(__name__)

LOG_FORMAT_VERSION = 1


@dataclass(frozen=True)
class CallRecord:
    """Ground truth for one completed attempt."""
    tick: int
    call_type: CallType
    prompt: str
    output: str
    input_tokens: int
    completion_tokens: int
    latency_ms: int
    provider: str
    success: bool
    attempt_number: int
    random_seed: int = 0
    model: str = ""
    error_type: Optional[ErrorType] = None
    error_message: str = ""
    http_status: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        data = asdict(self)
        data["call_type"] = self.call_type.value
        data["error_type"] = self.error_type.value if self.error_type else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CallRecord":
        data = dict(data)
        data["call_type"] = CallType(data["call_type"])
        error_type = data.get("error_type")
        data["error_type"] = ErrorType(error_type) if error_type else None
        return cls(**data)


@dataclass(frozen=True)
class RandomDecisionRecord:
    """One random value consumed by the orchestrator."""
    tick: int
    system_name: str
    decision_name: str
    random_value: float
    seed: int = 0
    was_used: bool = True

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RandomDecisionRecord":
        return cls(**data)


@dataclass(frozen=True)
class Divergence:
    """Point where a replayed run stopped matching recorded history."""
    tick: int
    call_type: Optional[CallType]
    position: int
    reason: str
    expected: str = ""
    actual: str = ""

    def describe(self) -> str:
        label = self.call_type.value if self.call_type else "random"
        return f"Replay divergence at tick {self.tick} ({label} #{self.position}): {self.reason}"


class ReplayLogger:
    """Append-only log of call records and random decisions."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.calls: List[CallRecord] = []
        self.random_decisions: List[RandomDecisionRecord] = []
        self.successful_calls = 0
        self.failed_calls = 0
        self.last_tick = -1

    def enable_logging(self) -> None:
        self.enabled = True

    def disable_logging(self) -> None:
        self.enabled = False

    def record_call(self, record: CallRecord) -> None:
        if not self.enabled:
            return
        if record.tick < self.last_tick:
            raise ValueError(
                f"Call records must be appended in tick order (tick {record.tick} after {self.last_tick})"
            )
        self.calls.append(record)
        self.last_tick = record.tick
        if record.success:
            self.successful_calls += 1
        else:
            self.failed_calls += 1

    def record_random_decision(self, record: RandomDecisionRecord) -> None:
        if self.enabled:
            self.random_decisions.append(record)

    def get_calls_at_tick(self, tick: int) -> List[CallRecord]:
        return [record for record in self.calls if record.tick == tick]

    def get_call_at_tick(self, tick: int, call_type: CallType) -> Optional[CallRecord]:
        for record in self.calls:
            if record.tick == tick and record.call_type == call_type:
                return record
        return None

    def get_random_decision_at_tick(self, tick: int, system_name: str) -> Optional[RandomDecisionRecord]:
        for record in self.random_decisions:
            if record.tick == tick and record.system_name == system_name:
                return record
        return None

    def validate_replay_at_tick(self, tick: int, expected_call_count: int) -> bool:
        return len(self.get_calls_at_tick(tick)) == expected_call_count

    def clear(self) -> None:
        self.calls.clear()
        self.random_decisions.clear()
        self.successful_calls = 0
        self.failed_calls = 0
        self.last_tick = -1

    def get_statistics(self) -> Dict[str, int]:
        return {
            "calls_recorded": len(self.calls),
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "random_decisions_recorded": len(self.random_decisions),
            "last_tick": self.last_tick,
        }

    def to_dict(self) -> dict:
        return {
            "version": LOG_FORMAT_VERSION,
            "generated_at": datetime.now().isoformat(),
            "total_calls": len(self.calls),
            "total_random_decisions": len(self.random_decisions),
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "calls": [record.to_dict() for record in self.calls],
            "random_decisions": [record.to_dict() for record in self.random_decisions],
        }

    def save_to_file(self, path: str) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return target

    @classmethod
    def load_from_file(cls, path: str) -> "ReplayLogger":
        """Load a saved log.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file is not a replay log of a known version
        """
        source = Path(path)
        if not source.exists():
            raise FileNotFoundError(f"Replay log not found: {path}")
        with open(source, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in replay log {path}: {e}")

        if not isinstance(data, dict) or data.get("version") != LOG_FORMAT_VERSION:
            raise ValueError(f"Unsupported replay log format in {path}")

        replay_log = cls()
        for item in data.get("calls", []):
            replay_log.record_call(CallRecord.from_dict(item))
        for item in data.get("random_decisions", []):
            replay_log.record_random_decision(RandomDecisionRecord.from_dict(item))
        return replay_log


class ReplayValidator:
    """Serves recorded outcomes in order and detects desynchronization."""

    def __init__(
        self,
        calls: Sequence[CallRecord],
        random_decisions: Sequence[RandomDecisionRecord] = (),
        strict: bool = True,
    ):
        """Index a recorded session for replay.

        Args:
            calls: Call records in recorded order
            random_decisions: Random decision records in recorded order
            strict: Raise ``ReplayDivergenceError`` on the first divergence
        """
        self.strict = strict
        self.replay_mode_enabled = False
        self.divergences: List[Divergence] = []
        self.total_calls = len(calls)

        self._calls: Dict[Tuple[int, CallType], List[CallRecord]] = defaultdict(list)
        for record in calls:
            self._calls[(record.tick, record.call_type)].append(record)
        self._call_cursor: Dict[Tuple[int, CallType], int] = defaultdict(int)

        self._randoms: Dict[Tuple[str, str], List[RandomDecisionRecord]] = defaultdict(list)
        for decision in random_decisions:
            self._randoms[(decision.system_name, decision.decision_name)].append(decision)
        self._random_cursor: Dict[Tuple[str, str], int] = defaultdict(int)
        self.consumed_calls = 0

    @classmethod
    def from_logger(cls, replay_log: ReplayLogger, strict: bool = True) -> "ReplayValidator":
        return cls(replay_log.calls, replay_log.random_decisions, strict=strict)

    @classmethod
    def from_file(cls, path: str, strict: bool = True) -> "ReplayValidator":
        return cls.from_logger(ReplayLogger.load_from_file(path), strict=strict)

    def enable_replay_mode(self) -> None:
        self.replay_mode_enabled = True
        self._call_cursor.clear()
        self._random_cursor.clear()
        self.consumed_calls = 0
        self.divergences.clear()

    def disable_replay_mode(self) -> None:
        self.replay_mode_enabled = False

    def check_for_divergence(self, tick: int, call_type: CallType, prompt: str) -> Optional[Divergence]:
        """Compare the current prompt with the next recorded one for this key.

        Does not consume the record.
        """
        key = (tick, call_type)
        position = self._call_cursor[key]
        records = self._calls.get(key, [])
        if position >= len(records):
            return Divergence(
                tick=tick,
                call_type=call_type,
                position=position,
                reason="no recorded call at this position",
                actual=prompt,
            )
        expected = records[position].prompt
        if expected != prompt:
            return Divergence(
                tick=tick,
                call_type=call_type,
                position=position,
                reason="prompt differs from recorded prompt",
                expected=expected,
                actual=prompt,
            )
        return None

    def get_next_replay_response(self, tick: int, call_type: CallType, prompt: str) -> Optional[CallRecord]:
        """Consume the next recorded outcome for (tick, call type).

        Returns:
            The recorded attempt, or None when nothing was recorded at this
            position (non-strict mode only)

        Raises:
            RuntimeError: If replay mode is not enabled
            ReplayDivergenceError: On divergence in strict mode
        """
        if not self.replay_mode_enabled:
            raise RuntimeError("Replay mode is not enabled")

        divergence = self.check_for_divergence(tick, call_type, prompt)
        if divergence is not None:
            self.report_divergence(divergence)

        key = (tick, call_type)
        position = self._call_cursor[key]
        records = self._calls.get(key, [])
        if position >= len(records):
            return None
        self._call_cursor[key] = position + 1
        self.consumed_calls += 1
        return records[position]

    def next_random_value(self, tick: int, system_name: str, decision_name: str) -> Optional[float]:
        key = (system_name, decision_name)
        position = self._random_cursor[key]
        decisions = self._randoms.get(key, [])
        if position >= len(decisions):
            self.report_divergence(Divergence(
                tick=tick,
                call_type=None,
                position=position,
                reason=f"no recorded random value for {system_name}.{decision_name}",
            ))
            return None
        self._random_cursor[key] = position + 1
        return decisions[position].random_value

    def cursor(self, tick: int, call_type: CallType) -> int:
        """Position of the next unconsumed record for (tick, call type)."""
        return self._call_cursor[(tick, call_type)]

    def remaining_calls(self) -> int:
        return self.total_calls - self.consumed_calls

    def get_validation_stats(self) -> Dict[str, object]:
        return {
            "calls_loaded": self.total_calls,
            "calls_consumed": self.consumed_calls,
            "divergence_count": len(self.divergences),
            "replay_mode": self.replay_mode_enabled,
        }

    def report_divergence(self, divergence: Divergence) -> None:
        self.divergences.append(divergence)
        logger.error(divergence.describe())
        if self.strict:
            raise ReplayDivergenceError(divergence)


class DeterministicRandom:
    """Seeded random stream whose draws are logged and replayable.

    While recording, values come from a seeded generator and are appended to
    the replay log. While replaying, values are served from the log in the
    order they were drawn for each (system, decision) pair.
    """

    def __init__(
        self,
        seed: int = 0,
        replay_logger: Optional[ReplayLogger] = None,
        validator: Optional[ReplayValidator] = None,
    ):
        self.seed = seed
        self.replay_logger = replay_logger
        self.validator = validator
        self.tick = 0
        self._rng = random.Random(seed)

    def random(self, system_name: str, decision_name: str) -> float:
        if self.validator is not None and self.validator.replay_mode_enabled:
            value = self.validator.next_random_value(self.tick, system_name, decision_name)
            if value is not None:
                return value
            # Non-strict replay ran past the log; keep the run going
            value = self._rng.random()
        else:
            value = self._rng.random()

        if self.replay_logger is not None:
            self.replay_logger.record_random_decision(RandomDecisionRecord(
                tick=self.tick,
                system_name=system_name,
                decision_name=decision_name,
                random_value=value,
                seed=self.seed,
            ))
        return value

    def source(self, system_name: str, decision_name: str) -> Callable[[], float]:
        """Zero-argument callable drawing from this stream."""
        return lambda: self.random(system_name, decision_name)


RecordSource = Union[ReplayLogger, Sequence[CallRecord]]


def _comparable(record: CallRecord) -> tuple:
    return (
        record.tick,
        record.call_type,
        record.prompt,
        record.output,
        record.input_tokens,
        record.completion_tokens,
        record.success,
        record.attempt_number,
    )


def compare_logs(first: RecordSource, second: RecordSource) -> Optional[Divergence]:
    """First position at which two recorded sessions differ, or None."""
    first_calls = first.calls if isinstance(first, ReplayLogger) else list(first)
    second_calls = second.calls if isinstance(second, ReplayLogger) else list(second)

    for position, (a, b) in enumerate(zip(first_calls, second_calls)):
        if _comparable(a) != _comparable(b):
            if a.prompt != b.prompt:
                reason = "prompt differs"
            elif a.output != b.output:
                reason = "output differs"
            else:
                reason = "call metadata differs"
            return Divergence(
                tick=a.tick,
                call_type=a.call_type,
                position=position,
                reason=reason,
                expected=a.prompt if a.prompt != b.prompt else a.output,
                actual=b.prompt if a.prompt != b.prompt else b.output,
            )

    if len(first_calls) != len(second_calls):
        position = min(len(first_calls), len(second_calls))
        longer = first_calls if len(first_calls) > len(second_calls) else second_calls
        extra = longer[position]
        return Divergence(
            tick=extra.tick,
            call_type=extra.call_type,
            position=position,
            reason=f"log lengths differ ({len(first_calls)} vs {len(second_calls)})",
        )
    return None
