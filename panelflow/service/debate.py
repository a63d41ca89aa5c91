"""Structured multi-round debate among analyst roles.

A panel debate starts from independent per-role assessments (round 1) and
lets every role re-argue with sight of the previous round (round 2 onward).
After each round the spread of confidences gives a consensus level::

    consensus_level = max(0, 1 - sqrt(population_variance(confidences)))

The debate stops at ``max_rounds`` or earlier once a round from the second
onward exceeds the early-stop threshold. Optionally two adversarial roles argue
the strongest one-sided bullish and bearish cases concurrently, and an arbiter
role scores objectivity and reliability; the three are blended into a final
confidence with fixed 0.4/0.3/0.3 weights.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from panelflow.logging import get_logger
from panelflow.service.errors import DebateError, RoleInvocationError
from panelflow.service.roles import RoleAssessment, RoleInvoker

logger = get_logger(__name__)

DEFAULT_MAX_ROUNDS = 3
EARLY_STOP_THRESHOLD = 0.8
EARLY_STOP_MIN_ROUND = 2
STRONG_CONSENSUS = 0.8
MEDIUM_CONSENSUS = 0.6
WEAK_CONSENSUS = 0.4
DISAGREEMENT_CONFIDENCE_GAP = 0.3
TARGET_ARGUMENT_COUNT = 15
TARGET_ARGUMENT_LENGTH = 200
DOMINANCE_MARGIN = 0.1
BULL_BEAR_GAP_MARKER = 0.3
PANEL_CONSENSUS_MARKER = 0.6
WEIGHT_BULL_BEAR = 0.4
WEIGHT_PANEL = 0.3
WEIGHT_ARBITER = 0.3


class Stance(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"
    UNCLEAR = "unclear"


class ConsensusLevel(str, Enum):
    STRONG = "strong"
    MEDIUM = "medium"
    WEAK = "weak"
    DIVERGENT = "divergent"


class DebateVariant(str, Enum):
    PANEL = "panel"
    # each role only sees arguments whose stance differs from its own
    REBUTTAL = "rebuttal"


# Ties between stances break in this order: bullish, bearish, neutral
_STANCE_KEYWORDS: Tuple[Tuple[Stance, Tuple[str, ...]], ...] = (
    (
        Stance.BULLISH,
        ("buy", "bullish", "upside", "outperform", "overweight", "accumulate",
         "go long", "rally", "rise", "uptrend", "undervalued"),
    ),
    (
        Stance.BEARISH,
        ("sell", "bearish", "downside", "underperform", "underweight", "go short",
         "decline", "downtrend", "overvalued", "reduce"),
    ),
    (
        Stance.NEUTRAL,
        ("hold", "neutral", "wait", "sideways", "market perform", "watch"),
    ),
)

_STANCE_PATTERNS = [
    (stance, re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b"))
    for stance, words in _STANCE_KEYWORDS
]


def classify_stance(text: str) -> Stance:
    """Pick the stance with the most keyword hits in ``text``."""
    normalized = re.sub(r"[_\-]+", " ", (text or "").lower())
    best, best_hits = Stance.UNCLEAR, 0
    for stance, pattern in _STANCE_PATTERNS:
        hits = len(pattern.findall(normalized))
        if hits > best_hits:
            best, best_hits = stance, hits
    return best


def consensus_level(confidences: Sequence[float]) -> float:
    if not confidences:
        return 0.0
    mean = sum(confidences) / len(confidences)
    variance = sum((c - mean) ** 2 for c in confidences) / len(confidences)
    return max(0.0, 1.0 - math.sqrt(variance))


def classify_consensus(level: float) -> ConsensusLevel:
    if level > STRONG_CONSENSUS:
        return ConsensusLevel.STRONG
    if level > MEDIUM_CONSENSUS:
        return ConsensusLevel.MEDIUM
    if level > WEAK_CONSENSUS:
        return ConsensusLevel.WEAK
    return ConsensusLevel.DIVERGENT


@dataclass
class Argument:
    role: str
    round: int
    text: str
    recommendation: str
    confidence: float
    stance: Stance

    @classmethod
    def from_assessment(cls, assessment: RoleAssessment, round_number: int) -> "Argument":
        text = assessment.rationale or assessment.recommendation
        return cls(
            role=assessment.role,
            round=round_number,
            text=text,
            recommendation=assessment.recommendation,
            confidence=assessment.confidence,
            stance=classify_stance(f"{assessment.recommendation} {assessment.rationale}"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "round": self.round,
            "text": self.text,
            "recommendation": self.recommendation,
            "confidence": self.confidence,
            "stance": self.stance.value,
        }


def pairwise_agreement(final_arguments: Dict[str, Argument]) -> Dict[str, float]:
    """Mean agreement of each role with every other role.

    Two roles agree by ``1 - |confidence gap|`` when their stances match and
    not at all otherwise. A role with no counterpart scores 0.
    """
    scores: Dict[str, float] = {}
    for role, argument in final_arguments.items():
        others = [a for r, a in final_arguments.items() if r != role]
        if not others:
            scores[role] = 0.0
            continue
        total = 0.0
        for other in others:
            if other.stance == argument.stance:
                total += max(0.0, 1.0 - abs(argument.confidence - other.confidence))
        scores[role] = total / len(others)
    return scores


def debate_quality(
    arguments: Sequence[Argument],
    *,
    target_count: int = TARGET_ARGUMENT_COUNT,
    target_length: int = TARGET_ARGUMENT_LENGTH,
) -> float:
    if not arguments:
        return 0.0
    participation = min(1.0, len(arguments) / target_count)
    mean_length = sum(len(a.text) for a in arguments) / len(arguments)
    substantiveness = min(1.0, mean_length / target_length)
    mean_confidence = min(1.0, sum(a.confidence for a in arguments) / len(arguments))
    return min(1.0, 0.3 * participation + 0.4 * substantiveness + 0.3 * mean_confidence)


def disagreement_points(final_arguments: Sequence[Argument]) -> List[str]:
    points: List[str] = []
    groups: Dict[Stance, List[str]] = {}
    for argument in final_arguments:
        groups.setdefault(argument.stance, []).append(argument.role)
    if len(groups) > 1:
        described = " vs ".join(
            f"{stance.value} ({', '.join(roles)})" for stance, roles in groups.items()
        )
        points.append(f"direction disagreement: {described}")
    if len(final_arguments) > 1:
        highest = max(final_arguments, key=lambda a: a.confidence)
        lowest = min(final_arguments, key=lambda a: a.confidence)
        gap = highest.confidence - lowest.confidence
        if gap > DISAGREEMENT_CONFIDENCE_GAP:
            points.append(
                f"confidence gap {gap:.2f} between {highest.role} and {lowest.role}"
            )
    return points


@dataclass
class DebateRound:
    number: int
    arguments: List[Argument]
    consensus_level: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "consensus_level": self.consensus_level,
            "arguments": [a.to_dict() for a in self.arguments],
        }


@dataclass
class DebateResult:
    subject: str
    variant: DebateVariant
    rounds: List[DebateRound]
    final_arguments: Dict[str, Argument]
    consensus_level: float
    consensus: ConsensusLevel
    majority_stance: Stance
    agreement: Dict[str, float]
    quality: float
    disagreement_points: List[str] = field(default_factory=list)
    key_insights: List[str] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def mean_confidence(self) -> float:
        if not self.final_arguments:
            return 0.0
        return sum(a.confidence for a in self.final_arguments.values()) / len(self.final_arguments)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "variant": self.variant.value,
            "rounds": [r.to_dict() for r in self.rounds],
            "round_count": len(self.rounds),
            "consensus_level": self.consensus_level,
            "consensus": self.consensus.value,
            "majority_stance": self.majority_stance.value,
            "mean_confidence": self.mean_confidence,
            "agreement": dict(self.agreement),
            "quality": self.quality,
            "disagreement_points": list(self.disagreement_points),
            "key_insights": list(self.key_insights),
            "stopped_early": self.stopped_early,
        }


@dataclass
class BullBearResult:
    bull: RoleAssessment
    bear: RoleAssessment
    signed_difference: float
    confidence_difference: float
    dominant_side: Stance
    intensity: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bull": self.bull.to_dict(),
            "bear": self.bear.to_dict(),
            "signed_difference": self.signed_difference,
            "confidence_difference": self.confidence_difference,
            "dominant_side": self.dominant_side.value,
            "intensity": self.intensity,
        }


@dataclass
class ArbiterVerdict:
    role: str
    objectivity: float
    reliability: float
    score: float
    recommendation: str = ""
    rationale: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "objectivity": self.objectivity,
            "reliability": self.reliability,
            "score": self.score,
            "recommendation": self.recommendation,
            "rationale": self.rationale,
        }


@dataclass
class SynthesisResult:
    panel: DebateResult
    bull_bear: BullBearResult
    combined_confidence: float
    final_confidence: float
    disagreement_markers: List[str] = field(default_factory=list)
    arbiter: Optional[ArbiterVerdict] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "panel": self.panel.to_dict(),
            "bull_bear": self.bull_bear.to_dict(),
            "combined_confidence": self.combined_confidence,
            "final_confidence": self.final_confidence,
            "disagreement_markers": list(self.disagreement_markers),
            "arbiter": self.arbiter.to_dict() if self.arbiter else None,
        }


def _unit(value: Any, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if number != number:
        return fallback
    return min(1.0, max(0.0, number))


class StructuredDebateEngine:
    """Runs panel debates, bull/bear synthesis and arbitration over a role invoker.

    Role calls are blocking and run on ``executor`` (the event loop's default
    pool when ``None``); roles within one round are invoked concurrently.
    """

    def __init__(
        self,
        invoker: Optional[RoleInvoker] = None,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        early_stop_threshold: float = EARLY_STOP_THRESHOLD,
        variant: DebateVariant = DebateVariant.PANEL,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.invoker = invoker
        self.max_rounds = max_rounds
        self.early_stop_threshold = early_stop_threshold
        self.variant = DebateVariant(variant)
        self.executor = executor
        self.logger = get_logger(__name__)

    async def _invoke(self, role: str, prompt: str, context: Dict[str, Any]) -> RoleAssessment:
        if self.invoker is None:
            raise RoleInvocationError(f"no role invoker configured for {role}")
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(
            self.executor, functools.partial(self.invoker.invoke, role, prompt, context)
        )
        return RoleAssessment.from_payload(role, result)

    async def _invoke_many(
        self, requests: List[Tuple[str, str, Dict[str, Any]]], *, round_number: int
    ) -> List[RoleAssessment]:
        outcomes = await asyncio.gather(
            *(self._invoke(role, prompt, ctx) for role, prompt, ctx in requests),
            return_exceptions=True,
        )
        assessments: List[RoleAssessment] = []
        for (role, _prompt, _ctx), outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                self.logger.warning(
                    "debate_role_failed",
                    role=role,
                    round=round_number,
                    error_type=type(outcome).__name__,
                    error=str(outcome),
                )
                continue
            assessments.append(outcome)
        return assessments

    def _opening_request(self, role: str, subject: str, evidence: Dict[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
        prompt = f"Assess {subject} using only the shared evidence. State a recommendation, a confidence between 0 and 1, and your rationale."
        return role, prompt, {"subject": subject, "evidence": evidence, "round": 1}

    def _rebuttal_request(
        self,
        own: Argument,
        previous: Sequence[Argument],
        subject: str,
        evidence: Dict[str, Any],
        round_number: int,
        variant: DebateVariant,
    ) -> Tuple[str, str, Dict[str, Any]]:
        shown = [a for a in previous if a.role != own.role]
        if variant == DebateVariant.REBUTTAL:
            shown = [a for a in shown if a.stance != own.stance]
        lines = [
            f"Debate round {round_number} on {subject}.",
            f"Your previous position ({own.stance.value}, confidence {own.confidence:.2f}): {own.text}",
        ]
        if shown:
            lines.append("Positions from other analysts:")
            lines.extend(
                f"- {a.role} ({a.stance.value}, confidence {a.confidence:.2f}): {a.text}"
                for a in shown
            )
        lines.append("Respond with your revised recommendation, confidence and rationale.")
        context = {
            "subject": subject,
            "evidence": evidence,
            "round": round_number,
            "previous": own.to_dict(),
            "arguments": [a.to_dict() for a in shown],
        }
        return own.role, "\n".join(lines), context

    async def debate(
        self,
        subject: str,
        *,
        roles: Optional[Sequence[str]] = None,
        assessments: Optional[Sequence[RoleAssessment]] = None,
        evidence: Optional[Dict[str, Any]] = None,
        max_rounds: Optional[int] = None,
        variant: Optional[DebateVariant] = None,
    ) -> DebateResult:
        """Run a panel debate.

        Round 1 uses ``assessments`` when given, otherwise asks every role in
        ``roles`` for an opening assessment. Later rounds need an invoker.
        """
        evidence = dict(evidence or {})
        rounds_allowed = max(1, max_rounds or self.max_rounds)
        mode = DebateVariant(variant or self.variant)
        if not assessments and not roles:
            raise DebateError("debate needs at least one role or assessment")
        if rounds_allowed > 1 and self.invoker is None:
            self.logger.info("debate_single_round", subject=subject, reason="no_invoker")
            rounds_allowed = 1

        rounds: List[DebateRound] = []
        final: Dict[str, Argument] = {}
        stopped_early = False
        for number in range(1, rounds_allowed + 1):
            if number == 1:
                if assessments:
                    opening = [RoleAssessment.from_payload(a.role, a) for a in assessments]
                else:
                    opening = await self._invoke_many(
                        [self._opening_request(r, subject, evidence) for r in roles or []],
                        round_number=1,
                    )
                if not opening:
                    raise DebateError(f"no role produced an opening argument on {subject}")
                arguments = [Argument.from_assessment(a, 1) for a in opening]
            else:
                previous = rounds[-1].arguments
                requests = [
                    self._rebuttal_request(final[a.role], previous, subject, evidence, number, mode)
                    for a in previous
                ]
                revised = await self._invoke_many(requests, round_number=number)
                if not revised:
                    self.logger.warning("debate_round_empty", subject=subject, round=number)
                    break
                arguments = [Argument.from_assessment(a, number) for a in revised]

            level = consensus_level([a.confidence for a in arguments])
            rounds.append(DebateRound(number=number, arguments=arguments, consensus_level=level))
            for argument in arguments:
                final[argument.role] = argument
            self.logger.info(
                "debate_round_completed",
                subject=subject,
                round=number,
                arguments=len(arguments),
                consensus_level=round(level, 4),
            )
            if number >= EARLY_STOP_MIN_ROUND and level > self.early_stop_threshold:
                stopped_early = number < rounds_allowed
                break

        finals = list(final.values())
        stance_counts = Counter(a.stance for a in finals)
        majority = stance_counts.most_common(1)[0][0] if stance_counts else Stance.UNCLEAR
        level = rounds[-1].consensus_level
        all_arguments = [a for r in rounds for a in r.arguments]
        result = DebateResult(
            subject=subject,
            variant=mode,
            rounds=rounds,
            final_arguments=final,
            consensus_level=level,
            consensus=classify_consensus(level),
            majority_stance=majority,
            agreement=pairwise_agreement(final),
            quality=debate_quality(all_arguments),
            disagreement_points=disagreement_points(finals),
            key_insights=[
                f"{a.role}: {a.stance.value} (confidence {a.confidence:.2f})" for a in finals
            ],
            stopped_early=stopped_early,
        )
        self.logger.info(
            "debate_completed",
            subject=subject,
            rounds=len(rounds),
            consensus=result.consensus.value,
            majority_stance=majority.value,
            stopped_early=stopped_early,
        )
        return result

    async def bull_bear(
        self,
        subject: str,
        *,
        evidence: Optional[Dict[str, Any]] = None,
        bull_role: str = "bull",
        bear_role: str = "bear",
    ) -> BullBearResult:
        """Argue the strongest one-sided cases concurrently and compare them."""
        context = {"subject": subject, "evidence": dict(evidence or {})}
        outcomes = await asyncio.gather(
            self._invoke(
                bull_role,
                f"Make the strongest one-sided bullish case for {subject}.",
                {**context, "side": Stance.BULLISH.value},
            ),
            self._invoke(
                bear_role,
                f"Make the strongest one-sided bearish case for {subject}.",
                {**context, "side": Stance.BEARISH.value},
            ),
            return_exceptions=True,
        )
        for role, outcome in zip((bull_role, bear_role), outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                raise DebateError(f"{role} side failed: {outcome}") from outcome
        bull, bear = outcomes
        signed = bull.confidence - bear.confidence
        if signed > DOMINANCE_MARGIN:
            dominant = Stance.BULLISH
        elif signed < -DOMINANCE_MARGIN:
            dominant = Stance.BEARISH
        else:
            dominant = Stance.NEUTRAL
        return BullBearResult(
            bull=bull,
            bear=bear,
            signed_difference=signed,
            confidence_difference=abs(signed),
            dominant_side=dominant,
            intensity=min(1.0, 2.0 * abs(signed)),
        )

    async def arbitrate(
        self,
        subject: str,
        panel: DebateResult,
        bull_bear: BullBearResult,
        *,
        arbiter_role: str,
    ) -> ArbiterVerdict:
        prompt = "\n".join(
            [
                f"Independently review the debate on {subject}.",
                f"Panel consensus {panel.consensus_level:.2f} ({panel.consensus.value}), majority {panel.majority_stance.value}.",
                f"Bull confidence {bull_bear.bull.confidence:.2f}, bear confidence {bull_bear.bear.confidence:.2f}.",
                "Score the objectivity and reliability of the arguments between 0 and 1.",
            ]
        )
        context = {"subject": subject, "panel": panel.to_dict(), "bull_bear": bull_bear.to_dict()}
        assessment = await self._invoke(arbiter_role, prompt, context)
        objectivity = _unit(assessment.data.get("objectivity"), assessment.confidence)
        reliability = _unit(assessment.data.get("reliability"), assessment.confidence)
        return ArbiterVerdict(
            role=arbiter_role,
            objectivity=objectivity,
            reliability=reliability,
            score=(objectivity + reliability) / 2,
            recommendation=assessment.recommendation,
            rationale=assessment.rationale,
        )

    async def synthesize(
        self,
        subject: str,
        *,
        roles: Optional[Sequence[str]] = None,
        assessments: Optional[Sequence[RoleAssessment]] = None,
        evidence: Optional[Dict[str, Any]] = None,
        bull_role: str = "bull",
        bear_role: str = "bear",
        arbiter_role: Optional[str] = None,
        max_rounds: Optional[int] = None,
        variant: Optional[DebateVariant] = None,
    ) -> SynthesisResult:
        panel, sides = await asyncio.gather(
            self.debate(
                subject,
                roles=roles,
                assessments=assessments,
                evidence=evidence,
                max_rounds=max_rounds,
                variant=variant,
            ),
            self.bull_bear(subject, evidence=evidence, bull_role=bull_role, bear_role=bear_role),
        )
        combined = ((sides.bull.confidence + sides.bear.confidence) / 2 + panel.consensus_level) / 2
        markers: List[str] = []
        if sides.confidence_difference > BULL_BEAR_GAP_MARKER:
            markers.append(f"bull/bear confidence gap {sides.confidence_difference:.2f}")
        if panel.consensus_level < PANEL_CONSENSUS_MARKER:
            markers.append(f"panel consensus {panel.consensus_level:.2f} below {PANEL_CONSENSUS_MARKER:.2f}")

        strongest = max(sides.bull.confidence, sides.bear.confidence)
        verdict: Optional[ArbiterVerdict] = None
        if arbiter_role:
            verdict = await self.arbitrate(subject, panel, sides, arbiter_role=arbiter_role)
            final = (
                WEIGHT_BULL_BEAR * strongest
                + WEIGHT_PANEL * panel.consensus_level
                + WEIGHT_ARBITER * verdict.score
            )
        else:
            # Renormalise the remaining weights when no arbiter is consulted
            final = (WEIGHT_BULL_BEAR * strongest + WEIGHT_PANEL * panel.consensus_level) / (
                WEIGHT_BULL_BEAR + WEIGHT_PANEL
            )
        result = SynthesisResult(
            panel=panel,
            bull_bear=sides,
            combined_confidence=combined,
            final_confidence=min(1.0, max(0.0, final)),
            disagreement_markers=markers,
            arbiter=verdict,
        )
        self.logger.info(
            "debate_synthesized",
            subject=subject,
            dominant_side=sides.dominant_side.value,
            combined_confidence=round(combined, 4),
            final_confidence=round(result.final_confidence, 4),
            markers=len(markers),
        )
        return result
