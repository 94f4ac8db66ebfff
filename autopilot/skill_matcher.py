"""
Skill Matcher

Scores configured remediation skills against the errors in a snapshot.

Scoring per skill (deterministic):
- +10 for each configured pattern found in any error message
- +5  if any error's category is one of the skill's categories
- +2  for each configured keyword present in any error message

The best skill at or above the minimum score wins; ties go to the skill
configured first. Below the minimum, no skill is matched and the caller
escalates.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from .config import SkillConfig
from .snapshot_model import ErrorEntry

logger = logging.getLogger("skill_matcher")

PATTERN_SCORE = 10
CATEGORY_SCORE = 5
KEYWORD_SCORE = 2
DEFAULT_MIN_SCORE = 10

_WORD_RE = re.compile(r"[a-z0-9_]+")


@dataclass
class SkillMatch:
    skill: SkillConfig
    score: int
    reasons: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.skill.name


def _words(messages: Iterable[str]) -> set:
    words = set()
    for message in messages:
        words.update(_WORD_RE.findall(message.lower()))
    return words


def score_skill(skill: SkillConfig, errors: Sequence[ErrorEntry]) -> SkillMatch:
    """Score one skill against a set of errors."""
    messages = [e.message.lower() for e in errors]
    words = _words(messages)
    score = 0
    reasons: List[str] = []

    for pattern in skill.patterns:
        needle = pattern.lower()
        if needle and any(needle in m for m in messages):
            score += PATTERN_SCORE
            reasons.append(f"pattern '{pattern}'")

    categories = {c for c in skill.categories}
    if categories and any(e.category in categories for e in errors):
        score += CATEGORY_SCORE
        reasons.append("category " + "/".join(sorted(c.value for c in categories)))

    for keyword in skill.keywords:
        needle = keyword.lower().strip()
        if not needle:
            continue
        # Multi-word keywords match as phrases, single words match whole words
        hit = any(needle in m for m in messages) if " " in needle else needle in words
        if hit:
            score += KEYWORD_SCORE
            reasons.append(f"keyword '{keyword}'")

    return SkillMatch(skill=skill, score=score, reasons=reasons)


def rank_skills(skills: Sequence[SkillConfig], errors: Sequence[ErrorEntry]) -> List[SkillMatch]:
    """All skills scored, best first, configuration order kept among equals."""
    matches = [score_skill(skill, errors) for skill in skills]
    # sorted() is stable, so equal scores stay in configuration order
    return sorted(matches, key=lambda m: -m.score)


def best_skill(
    skills: Sequence[SkillConfig],
    errors: Sequence[ErrorEntry],
    min_score: int = DEFAULT_MIN_SCORE,
) -> Optional[SkillMatch]:
    """Highest scoring skill at or above `min_score`, else None."""
    if not skills or not errors:
        return None

    ranked = rank_skills(skills, errors)
    best = ranked[0]
    if best.score < min_score:
        logger.debug(f"No skill reached min score {min_score} (best: {best.name}={best.score})")
        return None

    logger.debug(f"Matched skill {best.name} with score {best.score}: {', '.join(best.reasons)}")
    return best
