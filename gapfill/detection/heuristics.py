"""Keyword heuristics for workflow phase and skill domain."""

import re
from enum import Enum
from typing import Optional

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class Phase(int, Enum):
    """Ordinal workflow phase of a task's dominant verb."""

    RESEARCH = 1
    DESIGN = 2
    PLAN = 3
    BUILD = 4
    TEST = 5
    DEPLOY = 6
    MONITOR = 7


class SkillDomain(str, Enum):
    """Skill domain a task draws on."""

    STRATEGY = "strategy"
    DESIGN = "design"
    FRONTEND = "frontend"
    BACKEND = "backend"
    QA = "qa"


# Keywords of four or more letters also match as prefixes ("design" ~ "designing").
PHASE_KEYWORDS: dict[Phase, tuple[str, ...]] = {
    Phase.RESEARCH: (
        "research", "investigate", "analyse", "analyze", "analysis", "discover",
        "interview", "survey", "explore", "study", "benchmark",
    ),
    Phase.DESIGN: (
        "design", "mockup", "wireframe", "prototype", "sketch", "ux", "ui",
    ),
    Phase.PLAN: (
        "plan", "roadmap", "spec", "backlog", "scope", "define", "estimate",
        "prioritize", "prioritise", "architect", "outline",
    ),
    Phase.BUILD: (
        "build", "implement", "develop", "code", "create", "engineer",
        "integrate", "write", "refactor", "migrate", "set up", "setup",
    ),
    Phase.TEST: (
        "test", "qa", "validate", "verify", "debug", "bug", "regression",
        "audit",
    ),
    Phase.DEPLOY: (
        "deploy", "release", "ship", "launch", "rollout", "roll out",
        "publish", "go live",
    ),
    Phase.MONITOR: (
        "monitor", "measure", "track", "observe", "alert", "maintain",
        "retrospective",
    ),
}

SKILL_KEYWORDS: dict[SkillDomain, tuple[str, ...]] = {
    SkillDomain.STRATEGY: (
        "strategy", "goal", "roadmap", "plan", "launch", "market", "business",
        "stakeholder", "pricing", "define", "prioritize", "okr", "vision",
        "campaign", "research", "interview",
    ),
    SkillDomain.DESIGN: (
        "design", "mockup", "wireframe", "prototype", "figma", "ux", "ui",
        "sketch", "brand",
    ),
    SkillDomain.FRONTEND: (
        "frontend", "react", "css", "html", "component", "page", "screen",
        "javascript", "typescript", "client", "web",
    ),
    SkillDomain.BACKEND: (
        "backend", "api", "database", "server", "endpoint", "schema",
        "migrate", "auth", "infrastructure", "deploy", "pipeline", "service",
    ),
    SkillDomain.QA: (
        "test", "qa", "quality", "bug", "regression", "verify", "validate",
    ),
}


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens of a task text."""
    return _TOKEN_RE.findall(text.lower())


def _keyword_positions(tokens: list[str], keyword: str) -> list[int]:
    """Token positions where a keyword (or multi-word phrase) matches."""
    parts = keyword.split()
    positions = []
    for i in range(len(tokens) - len(parts) + 1):
        matched = True
        for offset, part in enumerate(parts):
            token = tokens[i + offset]
            if token == part:
                continue
            if len(part) >= 4 and token.startswith(part):
                continue
            matched = False
            break
        if matched:
            positions.append(i)
    return positions


def classify_phase(text: str) -> Optional[Phase]:
    """Classify the dominant verb of a task into a workflow phase.

    The earliest keyword in the text wins; ties go to the lower phase.
    Returns None when no keyword matches.
    """
    tokens = tokenize(text)
    best: Optional[tuple[int, int]] = None
    for phase, keywords in PHASE_KEYWORDS.items():
        for keyword in keywords:
            positions = _keyword_positions(tokens, keyword)
            if not positions:
                continue
            candidate = (positions[0], phase.value)
            if best is None or candidate < best:
                best = candidate
    return Phase(best[1]) if best else None


def classify_skill(text: str) -> Optional[SkillDomain]:
    """Classify a task into its skill domain.

    The domain with the most keyword hits wins; ties go to the earliest hit.
    Returns None when no keyword matches.
    """
    tokens = tokenize(text)
    best: Optional[tuple[int, int, int]] = None
    best_domain: Optional[SkillDomain] = None
    for order, (domain, keywords) in enumerate(SKILL_KEYWORDS.items()):
        hits: list[int] = []
        for keyword in keywords:
            hits.extend(_keyword_positions(tokens, keyword))
        if not hits:
            continue
        candidate = (-len(hits), min(hits), order)
        if best is None or candidate < best:
            best = candidate
            best_domain = domain
    return best_domain
