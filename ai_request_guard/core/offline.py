"""
Offline fallback provider.

Deterministic, template-based responses used as the terminal step of the
failover chain. Never raises and performs no I/O.
"""

import json
import re
from typing import Callable, List, Optional, Tuple

from ai_request_guard.providers.base import ProviderResponse

from .pricing import OFFLINE_MODEL
from .request import CallType
from .token_counter import TokenUsage, estimate_tokens

PROVIDER_NAME = "offline"

_DECISION_ACTIONS: List[Tuple[Tuple[str, ...], str, float]] = [
    (("allocate", "give"), "allocate", 0.8),
    (("delegate", "assign"), "delegate", 0.75),
    (("negotiate", "talk"), "negotiate", 0.7),
    (("inspire", "motivate"), "inspire", 0.8),
    (("suppress", "restrict"), "suppress", 0.7),
]

_WORLD_STATE_NOTES: List[Tuple[str, str]] = [
    ("food", "Food resources are noteworthy."),
    ("conflict", "Faction tensions are rising."),
    ("immigration", "Population changes affecting settlement."),
    ("religion", "Religious movements reshaping society."),
]

# role -> (topic keyword, line on topic, line otherwise)
_NPC_LINES = {
    "farmer": (
        "food",
        "The harvest depends on good weather and hard work. We must plan ahead.",
        "There's much work to be done in the fields.",
    ),
    "warrior": (
        "conflict",
        "We must remain vigilant. Threats are everywhere.",
        "Strength and discipline keep our settlement safe.",
    ),
    "merchant": (
        "trade",
        "Trade brings prosperity and connections to distant lands.",
        "Commerce is the lifeblood of civilization.",
    ),
}

_CRISIS_NARRATIVES: List[Tuple[Tuple[str, ...], str]] = [
    (("famine", "food"), "The settlement faces food scarcity. Crops have failed and stores are depleting."),
    (("conflict", "faction"), "Faction tensions escalate. Different groups struggle for influence."),
    (("disease",), "Illness spreads through the settlement. Morale suffers."),
    (("rebellion",), "Discontent grows into outright rebellion. Authority is questioned."),
]

_GENERIC_LINES: List[Tuple[str, str]] = [
    ("crisis", "Crisis detected. Settlement facing challenge."),
    ("decision", "Council reviews your decision. Response incoming."),
    ("resource", "Resources are being assessed. Management recommended."),
]

_SEVERITY_PATTERN = re.compile(r"severity\W{0,3}([01](?:\.\d+)?|\.\d+)", re.IGNORECASE)
DEFAULT_SEVERITY = 0.5


def scale_by_severity(text: str, severity: float) -> str:
    if severity < 0.3:
        return f"{text} (Minor concern)"
    if severity < 0.6:
        return f"{text} (Moderate concern)"
    if severity < 0.9:
        return f"{text} (Serious concern)"
    return f"{text} (CRITICAL - Immediate action required!)"


def parse_severity(prompt: str) -> float:
    match = _SEVERITY_PATTERN.search(prompt)
    if not match:
        return DEFAULT_SEVERITY
    return min(1.0, max(0.0, float(match.group(1))))


class OfflineFallbackProvider:
    """Template provider that always produces a usable response.

    When several templates fit a prompt, the choice is drawn from
    ``random_source`` so that replayed sessions pick the same one.
    """

    model_name = OFFLINE_MODEL

    def __init__(self, random_source: Optional[Callable[[], float]] = None):
        self._random = random_source or (lambda: 0.0)
        self.usage = TokenUsage(0, 0)
        self.total_requests = 0

    def call_llm(self, prompt: str, call_type: CallType = CallType.UNKNOWN) -> ProviderResponse:
        return self.generate(prompt, call_type)

    def generate(self, prompt: str, call_type: CallType) -> ProviderResponse:
        lowered = prompt.lower()
        if call_type == CallType.DECISION_INTERPRETATION:
            text = self._interpret_decision(lowered)
        elif call_type == CallType.WORLD_STATE_NARRATIVE:
            text = self._analyze_world_state(lowered)
        elif call_type == CallType.NPC_CONVERSATION:
            text = self._npc_dialogue(lowered)
        elif call_type == CallType.CRISIS_GENERATION:
            text = self._crisis_narrative(lowered, parse_severity(prompt))
        else:
            text = self._generic(lowered)

        response = ProviderResponse(
            text=text,
            input_tokens=estimate_tokens(prompt),
            completion_tokens=estimate_tokens(text),
            latency_ms=0,
            provider=PROVIDER_NAME,
            model=OFFLINE_MODEL,
        )
        self.usage = self.usage + TokenUsage(response.input_tokens, response.completion_tokens)
        self.total_requests += 1
        return response

    def is_available(self) -> bool:
        return True

    def get_provider_name(self) -> str:
        return PROVIDER_NAME

    def get_token_usage(self) -> TokenUsage:
        return self.usage

    def reset_token_usage(self) -> None:
        self.usage = TokenUsage(0, 0)
        self.total_requests = 0

    def _choose(self, candidates: List[str]) -> str:
        if len(candidates) == 1:
            return candidates[0]
        index = int(self._random() * len(candidates))
        return candidates[min(index, len(candidates) - 1)]

    def _interpret_decision(self, prompt: str) -> str:
        matches = [
            json.dumps({"action": action, "confidence": confidence})
            for keywords, action, confidence in _DECISION_ACTIONS
            if any(keyword in prompt for keyword in keywords)
        ]
        if not matches:
            return json.dumps({"action": "unknown", "confidence": 0.5})
        return self._choose(matches)

    def _analyze_world_state(self, prompt: str) -> str:
        notes = [note for keyword, note in _WORLD_STATE_NOTES if keyword in prompt]
        if not notes:
            return "Settlement conditions remain relatively stable at the moment."
        return " ".join(notes)

    def _npc_dialogue(self, prompt: str) -> str:
        lines = []
        for role, (topic, on_topic, otherwise) in _NPC_LINES.items():
            if role in prompt:
                line = on_topic if topic in prompt else otherwise
                lines.append(f'{role.capitalize()}: "{line}"')
        if not lines:
            return 'Villager: "I await your guidance, leader."'
        return self._choose(lines)

    def _crisis_narrative(self, prompt: str, severity: float) -> str:
        narratives = [
            narrative
            for keywords, narrative in _CRISIS_NARRATIVES
            if any(keyword in prompt for keyword in keywords)
        ]
        if not narratives:
            narratives = ["An unexpected crisis threatens settlement stability."]
        return scale_by_severity(self._choose(narratives), severity)

    def _generic(self, prompt: str) -> str:
        for keyword, line in _GENERIC_LINES:
            if keyword in prompt:
                return line
        return "Settlement acknowledges your leadership direction."
