"""
matcher.py

Decides whether a candidate task refers to an already-tracked task (UPDATE)
or is new work (CREATE). Matching strategies are ordered tiers; the first
tier that returns a result wins.

    1. explicit ticket reference   confidence 1.0
    2. vector similarity           similarity x type multiplier
    3. language model judgment     judged confidence x type multiplier
    4. lexical overlap             capped at 0.7
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from standup.merge import prepare_new_task, prepare_task_update
from standup.task_schema import CandidateTask, LocatedTask, SimilarityJudgment
from standup.ticket_ids import find_ticket_reference, normalize_ticket_id

logger = logging.getLogger(__name__)

STOPWORDS = {"the", "and", "for", "with", "from", "this", "that", "will", "need", "add", "fix", "use"}
TECH_TERMS = ["api", "database", "auth", "login", "dashboard", "ui", "frontend", "backend", "component", "feature"]
ACTION_VERBS = ["implement", "create", "build", "develop", "design", "fix", "update", "refactor", "optimize"]

LEXICAL_MATCH_THRESHOLD = 0.5
LEXICAL_CONFIDENCE_CAP = 0.7


@dataclass
class MatchResult:
    target: LocatedTask
    confidence: float
    method: str
    reasoning: str = ""


@dataclass
class MatchDecision:
    action: str  # 'CREATE' or 'UPDATE'
    confidence: float = 0.0
    method: str = "none"
    reasoning: str = ""
    target: Optional[LocatedTask] = None
    delta: Dict[str, Any] = field(default_factory=dict)
    new_task: Optional[Dict[str, Any]] = None

    @property
    def is_update(self) -> bool:
        return self.action == "UPDATE"


# ── Scoring helpers ───────────────────────────────────────────────────────────

def type_multiplier(new_type: str, existing_type: str) -> float:
    """Cross-type matches are allowed at reduced confidence."""
    return 1.0 if new_type == existing_type else 0.8


def adaptive_threshold(description: str, pool_size: int) -> float:
    threshold = 0.6
    if pool_size <= 3:
        threshold = 0.5
    if len(description) > 200:
        threshold = 0.65
    if len(description) < 50:
        threshold = 0.55
    return threshold


def tokenize(text: Optional[str]) -> List[str]:
    if not text:
        return []
    words = re.sub(r"[^a-z0-9\s]", " ", text.lower()).split()
    return [w for w in words if len(w) > 2 and w not in STOPWORDS]


def semantic_bonus(a: str, b: str) -> float:
    lower_a, lower_b = a.lower(), b.lower()
    score = 0.0
    for term in TECH_TERMS:
        if term in lower_a and term in lower_b:
            score += 0.1
    for verb in ACTION_VERBS:
        if verb in lower_a and verb in lower_b:
            score += 0.05
    if lower_a in lower_b or lower_b in lower_a:
        score += 0.3
    return min(score, 1.0)


def lexical_judgment(new_description: str, existing_description: str) -> SimilarityJudgment:
    new_words: Set[str] = set(tokenize(new_description))
    existing_words: Set[str] = set(tokenize(existing_description))
    largest = max(len(new_words), len(existing_words))
    common = new_words & existing_words
    overlap = len(common) / largest if largest else 0.0
    bonus = semantic_bonus(new_description, existing_description)
    combined = overlap * 0.6 + bonus * 0.4
    return SimilarityJudgment(
        is_match=combined >= LEXICAL_MATCH_THRESHOLD,
        confidence=min(combined, LEXICAL_CONFIDENCE_CAP),
        reasoning=f"Lexical analysis: {round(overlap * 100)}% word overlap, {round(bonus * 100)}% semantic bonus",
        similarities=sorted(common)[:5],
        differences=sorted(new_words ^ existing_words)[:5],
    )


def same_assignee(candidate: CandidateTask, pool: Sequence[LocatedTask]) -> List[LocatedTask]:
    return [item for item in pool if item.task.assignee == candidate.assignee]


# ── Tiers ─────────────────────────────────────────────────────────────────────

class ExplicitReferenceTier:
    """Candidate names a ticket ("SP-7", "sp 7") that exists anywhere in the pool."""
    method = "explicit_id"

    def __init__(self, prefix: str = "SP"):
        self.prefix = prefix

    def try_match(self, candidate: CandidateTask, pool: Sequence[LocatedTask]) -> Optional[MatchResult]:
        reference = normalize_ticket_id(candidate.existing_task_id, self.prefix) \
            or find_ticket_reference(candidate.description, self.prefix)
        if not reference:
            return None

        for item in pool:
            if normalize_ticket_id(item.ticket_id, self.prefix) == reference:
                return MatchResult(item, 1.0, self.method, f"Explicit reference to {reference}")

        logger.warning(
            "[Matcher] Ticket %s mentioned but not found. Candidate: '%s'. Available: %s",
            reference, candidate.description[:80], [item.ticket_id for item in pool],
        )
        return None


class VectorSimilarityTier:
    method = "vector"

    def __init__(self, index, threshold: float = 0.75, top_k: int = 10):
        self.index = index
        self.threshold = threshold
        self.top_k = top_k

    def try_match(self, candidate: CandidateTask, pool: Sequence[LocatedTask]) -> Optional[MatchResult]:
        by_id = {item.ticket_id: item for item in same_assignee(candidate, pool)}
        if not by_id:
            return None
        try:
            similar = self.index.query(
                candidate.description,
                {"assignee": candidate.assignee, "type": candidate.type, "status": candidate.status},
                top_k=self.top_k,
                threshold=self.threshold,
                assignee=candidate.assignee,
            )
        except Exception as e:
            logger.warning("[Matcher] Vector search failed, falling through: %s", e)
            return None

        for hit in similar:
            target = by_id.get(hit.task_id)
            if target is None or hit.similarity < self.threshold:
                continue
            confidence = hit.similarity * type_multiplier(candidate.type, target.task.type)
            return MatchResult(
                target, confidence, self.method,
                f"Vector similarity {hit.similarity:.3f} with {hit.task_id}",
            )
        return None


class LLMJudgmentTier:
    method = "llm"

    def __init__(self, judge):
        self.judge = judge

    def try_match(self, candidate: CandidateTask, pool: Sequence[LocatedTask]) -> Optional[MatchResult]:
        options = same_assignee(candidate, pool)
        if not options:
            return None
        threshold = adaptive_threshold(candidate.description, len(options))

        best: Optional[MatchResult] = None
        for item in options:
            judgment = self._judge(candidate, item)
            if not judgment.is_match:
                continue
            adjusted = judgment.confidence * type_multiplier(candidate.type, item.task.type)
            if adjusted < threshold:
                continue
            if best is None or adjusted > best.confidence:
                best = MatchResult(item, adjusted, self.method, judgment.reasoning)
        return best

    def _judge(self, candidate: CandidateTask, item: LocatedTask) -> SimilarityJudgment:
        context = {
            "assignee": candidate.assignee,
            "new_type": candidate.type,
            "existing_type": item.task.type,
            "existing_status": item.task.status,
            "existing_ticket_id": item.ticket_id,
        }
        try:
            return self.judge.judge(candidate.description, item.task.description, context)
        except Exception as e:
            logger.warning("[Matcher] Judge failed for %s, using lexical check: %s", item.ticket_id, e)
            return lexical_judgment(candidate.description, item.task.description)


class LexicalFallbackTier:
    method = "lexical"

    def try_match(self, candidate: CandidateTask, pool: Sequence[LocatedTask]) -> Optional[MatchResult]:
        best: Optional[MatchResult] = None
        for item in same_assignee(candidate, pool):
            judgment = lexical_judgment(candidate.description, item.task.description)
            if judgment.is_match and (best is None or judgment.confidence > best.confidence):
                best = MatchResult(item, judgment.confidence, self.method, judgment.reasoning)
        return best


# ── Matcher ───────────────────────────────────────────────────────────────────

class TaskMatcher:

    def __init__(self, tiers: Sequence[Any]):
        self.tiers = list(tiers)

    @classmethod
    def build(cls, index=None, judge=None, prefix: str = "SP", vector_threshold: float = 0.75):
        """Standard tier order; tiers whose collaborator is missing are left out."""
        tiers: List[Any] = [ExplicitReferenceTier(prefix)]
        if index is not None:
            tiers.append(VectorSimilarityTier(index, threshold=vector_threshold))
        if judge is not None:
            tiers.append(LLMJudgmentTier(judge))
        tiers.append(LexicalFallbackTier())
        return cls(tiers)

    def match(self, candidate: CandidateTask, pool: Sequence[LocatedTask]) -> MatchDecision:
        try:
            for tier in self.tiers:
                result = tier.try_match(candidate, pool)
                if result is None:
                    continue
                logger.info(
                    "[Matcher] UPDATE %s via %s (%.2f): %s",
                    result.target.ticket_id, result.method, result.confidence, candidate.description[:60],
                )
                return MatchDecision(
                    action="UPDATE",
                    confidence=result.confidence,
                    method=result.method,
                    reasoning=result.reasoning,
                    target=result.target,
                    delta=prepare_task_update(candidate, result.target.task),
                )
        except Exception as e:
            logger.error("[Matcher] Matching failed, treating as new task: %s", e)

        logger.info("[Matcher] CREATE for %s: %s", candidate.assignee, candidate.description[:60])
        return MatchDecision(
            action="CREATE",
            reasoning="No existing task matched",
            new_task=prepare_new_task(candidate),
        )
