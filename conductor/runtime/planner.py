"""
planner.py - Plan Builder: turn a goal into a dependency-ordered ActionPlan.

The Plan Builder splits a free-form goal into ordered phases ("then",
"after that", "finally", ";") and parallel segments inside each phase
("and", ","). Every segment becomes one Step whose environment is chosen by
keyword scoring, the request's environment hint, the request flags and any
market signals. Dependencies follow the natural prerequisite order of step
kinds (setup before build, build before verify, navigate before interact)
plus the phase barrier, and interactive steps are chained because the
session is stateful.

Steps are appended in topological order and every dependency refers to an
earlier step, so the graph is acyclic by construction. Given the same
request, market signals and history snapshot the builder returns an
isomorphic plan (same step ids, environments, actions and dependencies).

Usage:
    from conductor.runtime.planner import PlanBuilder

    builder = PlanBuilder(history=store.aggregate())
    plan = builder.build_plan(request, market_signals)
    for step in plan.steps:
        print(step.id, step.environment.value, step.kind, step.depends_on)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .types import (
    ActionPlan,
    Environment,
    EnvironmentHint,
    HistorySummary,
    MarketSignal,
    Mode,
    Step,
    WorkflowId,
    WorkflowRequest,
    generate_plan_id,
    generate_workflow_id,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Keyword Tables
# =============================================================================

INTERACTIVE_KEYWORDS: Tuple[str, ...] = (
    "website",
    "browser",
    "screenshot",
    "web",
    "url",
    "http",
    "page",
    "form",
    "click",
    "navigate",
    "login",
    "ui",
    "interface",
    "visual",
    "interactive",
    "session",
    "competitor",
    "research",
    "search",
    "social media",
    "market research",
)

COMMAND_KEYWORDS: Tuple[str, ...] = (
    "run",
    "check",
    "build",
    "compile",
    "test",
    "lint",
    "deploy",
    "git",
    "npm",
    "yarn",
    "docker",
    "script",
    "command",
    "cli",
    "file",
    "directory",
    "install",
    "terminal",
)

MARKET_KEYWORDS: Tuple[str, ...] = (
    "competitor",
    "market",
    "trend",
    "analysis",
    "research",
    "pricing",
    "feedback",
    "review",
    "social",
    "media",
    "news",
)

INTENT_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "create": ("create", "build", "make", "develop", "implement", "add", "generate"),
    "fix": ("fix", "debug", "resolve", "repair", "solve", "correct", "patch"),
    "optimize": ("optimize", "improve performance", "speed up", "faster", "efficient"),
    "improve": ("improve", "enhance", "refactor", "upgrade", "better", "polish"),
    "explore": ("explore", "research", "investigate", "analyze", "understand", "study"),
    "maintain": ("maintain", "update", "clean", "organize", "document", "check"),
}

DOMAIN_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "web": ("website", "web", "page", "browser", "frontend", "ui"),
    "mobile": ("mobile", "ios", "android", "app store"),
    "api": ("api", "endpoint", "rest", "graphql", "service"),
    "data": ("data", "pipeline", "etl", "analytics", "dashboard"),
    "devtools": ("cli", "tool", "plugin", "extension", "library"),
}


@dataclass(frozen=True)
class StepKind:
    """A recognisable kind of step and its prerequisite rank.

    Lower ranks run before higher ranks inside a phase.
    """

    name: str
    rank: int
    keywords: Tuple[str, ...]


# Matched in order; the first kind with a keyword hit wins.
COMMAND_KINDS: Tuple[StepKind, ...] = (
    StepKind("setup", 0, ("install", "setup", "set up", "bootstrap", "prepare", "clone")),
    StepKind("build", 1, ("build", "compile", "bundle", "package")),
    StepKind("test", 2, ("test",)),
    StepKind("check", 2, ("check", "lint", "audit", "scan")),
    StepKind("deploy", 3, ("deploy", "release", "publish", "ship")),
    StepKind("verify", 4, ("verify", "validate", "confirm")),
)
COMMAND_DEFAULT_KIND = StepKind("run", 2, ())

INTERACTIVE_KINDS: Tuple[StepKind, ...] = (
    StepKind("research", 0, ("research", "search", "competitor", "market")),
    StepKind("navigate", 1, ("navigate", "open", "visit", "go to", "browse", "load")),
    StepKind("verify", 4, ("verify", "validate", "confirm", "check", "inspect")),
    StepKind("capture", 4, ("screenshot", "capture", "snapshot", "record")),
    StepKind("interact", 2, ("click", "type", "fill", "submit", "login", "select", "scroll")),
)
INTERACTIVE_DEFAULT_KIND = StepKind("interact", 2, ())

_PHASE_SPLIT = re.compile(
    r"\bthen\b|\bafter that\b|\bafterwards\b|\bfinally\b|;|\.(?:\s|$)", re.IGNORECASE
)
_SEGMENT_SPLIT = re.compile(r",|\band\b", re.IGNORECASE)
_TOKEN = re.compile(r"[a-z0-9]+")

STRONG_SIGNAL_MAGNITUDE = 0.5


# =============================================================================
# Text Helpers
# =============================================================================


def _tokens(text: str) -> List[str]:
    return _TOKEN.findall(text.lower())


def _matches(keyword: str, tokens: Sequence[str], normalized: str) -> bool:
    """Whole-word keyword match tolerant of simple inflections."""
    if " " in keyword:
        return f" {keyword} " in f" {normalized} "
    forms = {keyword, keyword + "s", keyword + "es", keyword + "ing", keyword + "ed"}
    return any(tok in forms for tok in tokens)


def _score(text: str, keywords: Sequence[str]) -> int:
    tokens = _tokens(text)
    normalized = " ".join(tokens)
    return sum(1 for kw in keywords if _matches(kw, tokens, normalized))


def split_goal(goal: str) -> List[List[str]]:
    """Split a goal into ordered phases of parallel segments.

    Example:
        >>> split_goal("lint and test, then deploy")
        [['lint', 'test'], ['deploy']]
    """
    phases: List[List[str]] = []
    for raw_phase in _PHASE_SPLIT.split(goal):
        segments = [seg.strip(" \t\n,;.") for seg in _SEGMENT_SPLIT.split(raw_phase)]
        segments = [seg for seg in segments if seg]
        if segments:
            phases.append(segments)
    if not phases:
        phases = [[goal.strip()]]
    return phases


def classify_intent(goal: str) -> str:
    """Classify a goal as create, fix, optimize, improve, explore or maintain."""
    best, best_score = "explore", 0
    for intent, keywords in INTENT_KEYWORDS.items():
        score = _score(goal, keywords)
        if score > best_score:
            best, best_score = intent, score
    return best


def extract_domain(goal: str) -> str:
    """Extract a coarse domain hint for the market signal provider."""
    best, best_score = "general", 0
    for domain, keywords in DOMAIN_KEYWORDS.items():
        score = _score(goal, keywords)
        if score > best_score:
            best, best_score = domain, score
    return best


def is_market_goal(goal: str) -> bool:
    return _score(goal, MARKET_KEYWORDS) > 0


def _kind_for(text: str, environment: Environment) -> StepKind:
    kinds = COMMAND_KINDS if environment == Environment.COMMAND else INTERACTIVE_KINDS
    for kind in kinds:
        if _score(text, kind.keywords) > 0:
            return kind
    return COMMAND_DEFAULT_KIND if environment == Environment.COMMAND else INTERACTIVE_DEFAULT_KIND


# =============================================================================
# Plan Builder
# =============================================================================


@dataclass
class _Draft:
    phase: int
    environment: Environment
    kind: StepKind
    instruction: str
    origin: str = "planned"


class PlanBuilder:
    """Builds ActionPlans from requests, biased by a read-only history snapshot.

    The builder holds no mutable state between calls; the history summary is
    a frozen snapshot taken by the caller.
    """

    def __init__(
        self,
        history: Optional[HistorySummary] = None,
        bias_min_samples: int = 3,
    ):
        self._history = history
        self._bias_min_samples = bias_min_samples

    # -------------------------------------------------------------------------
    # Environment selection
    # -------------------------------------------------------------------------

    def fallback_environment(self) -> Environment:
        """Environment used for segments with no keyword preference.

        Prefers the environment with the better historical step success rate
        once both have enough samples; otherwise command execution.
        """
        history = self._history
        if history is None:
            return Environment.COMMAND
        samples = history.environment_samples
        rates = history.environment_success
        cmd, inter = Environment.COMMAND.value, Environment.INTERACTIVE.value
        if (
            samples.get(cmd, 0) >= self._bias_min_samples
            and samples.get(inter, 0) >= self._bias_min_samples
            and rates.get(inter, 0.0) > rates.get(cmd, 0.0)
        ):
            return Environment.INTERACTIVE
        return Environment.COMMAND

    def _classify_segment(self, text: str, previous: Optional[Environment]) -> Environment:
        command_score = _score(text, COMMAND_KEYWORDS)
        interactive_score = _score(text, INTERACTIVE_KEYWORDS)
        if interactive_score > command_score:
            return Environment.INTERACTIVE
        if command_score > interactive_score:
            return Environment.COMMAND
        return previous or self.fallback_environment()

    def _single_environment(self, goal: str) -> Environment:
        command_score = _score(goal, COMMAND_KEYWORDS)
        interactive_score = _score(goal, INTERACTIVE_KEYWORDS)
        if interactive_score > command_score:
            return Environment.INTERACTIVE
        if command_score > interactive_score:
            return Environment.COMMAND
        return self.fallback_environment()

    # -------------------------------------------------------------------------
    # Drafting
    # -------------------------------------------------------------------------

    def _draft_segments(self, request: WorkflowRequest) -> List[_Draft]:
        phases = split_goal(request.goal)
        forced: Optional[Environment] = None
        if request.environment == EnvironmentHint.SINGLE:
            forced = self._single_environment(request.goal)

        drafts: List[_Draft] = []
        previous: Optional[Environment] = None
        for phase_idx, segments in enumerate(phases, start=1):
            phase_drafts = []
            for segment in segments:
                env = forced or self._classify_segment(segment, previous)
                previous = env
                phase_drafts.append(_Draft(phase_idx, env, _kind_for(segment, env), segment))
            # Stable sort keeps goal order among equal ranks.
            phase_drafts.sort(key=lambda d: d.kind.rank)
            drafts.extend(phase_drafts)
        return drafts

    def _apply_environment_policy(
        self,
        request: WorkflowRequest,
        drafts: List[_Draft],
        market_signals: Sequence[MarketSignal],
    ) -> List[_Draft]:
        if request.environment == EnvironmentHint.SINGLE:
            return drafts

        last_phase = drafts[-1].phase if drafts else 1
        envs = {d.environment for d in drafts}

        strong = [s for s in market_signals if s.direction == "rising" and s.magnitude >= STRONG_SIGNAL_MAGNITUDE]
        if request.market_intelligence and strong:
            trends = ", ".join(sorted(s.trend for s in strong))
            research = _Draft(
                0,
                Environment.INTERACTIVE,
                INTERACTIVE_KINDS[0],
                f"research market trends: {trends}",
                origin="research",
            )
            drafts = [research] + drafts
            envs.add(Environment.INTERACTIVE)

        needs_interactive = request.environment == EnvironmentHint.HYBRID or (
            request.visual_feedback or request.evolution_cycles > 0
        )
        if needs_interactive and Environment.INTERACTIVE not in envs:
            drafts.append(
                _Draft(
                    last_phase + 1,
                    Environment.INTERACTIVE,
                    StepKind("capture", 4, ()),
                    "capture interactive session state for evidence",
                )
            )
        if request.environment == EnvironmentHint.HYBRID and Environment.COMMAND not in envs:
            drafts.insert(
                0,
                _Draft(-1, Environment.COMMAND, COMMAND_KINDS[0], "prepare workspace"),
            )
        return drafts

    def _apply_mode_policy(self, request: WorkflowRequest, drafts: List[_Draft]) -> List[_Draft]:
        last_phase = max((d.phase for d in drafts), default=0)
        if request.mode == Mode.CONSERVATIVE:
            forced = None
            if request.environment == EnvironmentHint.SINGLE and drafts:
                forced = drafts[0].environment
            env = forced or Environment.COMMAND
            kind = _kind_for("verify", env)
            drafts.append(_Draft(last_phase + 1, env, kind, "verify results at checkpoint"))
        elif request.mode == Mode.AGGRESSIVE and request.evolution_cycles > 0:
            if request.environment != EnvironmentHint.SINGLE or (
                drafts and drafts[0].environment == Environment.INTERACTIVE
            ):
                drafts.append(
                    _Draft(
                        last_phase + 1,
                        Environment.INTERACTIVE,
                        StepKind("capture", 4, ()),
                        "capture final state for performance evaluation",
                    )
                )
        return drafts

    # -------------------------------------------------------------------------
    # Assembly
    # -------------------------------------------------------------------------

    def _assemble(
        self,
        request: WorkflowRequest,
        drafts: List[_Draft],
    ) -> List[Step]:
        steps: List[Step] = []
        previous_phase_ids: List[str] = []
        current_phase: Optional[int] = None
        phase_members: List[Tuple[Step, _Draft]] = []

        for n, draft in enumerate(drafts, start=1):
            if draft.phase != current_phase:
                if phase_members:
                    previous_phase_ids = [s.id for s, _ in phase_members]
                phase_members = []
                current_phase = draft.phase

            deps: List[str] = list(previous_phase_ids)
            for member, member_draft in phase_members:
                lower_rank = member_draft.kind.rank < draft.kind.rank
                session_order = (
                    member.environment == Environment.INTERACTIVE
                    and draft.environment == Environment.INTERACTIVE
                )
                if (lower_rank or session_order) and member.id not in deps:
                    deps.append(member.id)

            action = {
                "kind": draft.kind.name,
                "instruction": draft.instruction,
                "phase": draft.phase,
            }
            if draft.environment == Environment.INTERACTIVE and request.visual_feedback:
                action["capture_evidence"] = True

            step = Step(
                id=f"step-{n}",
                environment=draft.environment,
                action=action,
                depends_on=deps,
                origin=draft.origin,
            )
            steps.append(step)
            phase_members.append((step, draft))
        return steps

    def build_plan(
        self,
        request: WorkflowRequest,
        market_signals: Optional[Sequence[MarketSignal]] = None,
        workflow_id: Optional[WorkflowId] = None,
    ) -> ActionPlan:
        """Build the ActionPlan for a request.

        Args:
            request: The accepted WorkflowRequest.
            market_signals: Signals from the market provider, if the request
                opted in.
            workflow_id: Owning workflow id (generated if omitted).

        Returns:
            A validated, acyclic ActionPlan.
        """
        workflow_id = workflow_id or generate_workflow_id()
        signals = list(market_signals or [])

        drafts = self._draft_segments(request)
        drafts = self._apply_environment_policy(request, drafts, signals)
        drafts = self._apply_mode_policy(request, drafts)
        steps = self._assemble(request, drafts)

        plan = ActionPlan(
            id=generate_plan_id(workflow_id),
            workflow_id=workflow_id,
            steps=steps,
            intent=classify_intent(request.goal),
            domain=extract_domain(request.goal),
        )
        logger.info(
            "Built plan %s with %d steps (%s) for workflow %s",
            plan.id,
            len(plan.steps),
            ", ".join(f"{s.id}:{s.environment.value}/{s.kind}" for s in plan.steps),
            workflow_id,
        )
        return plan


def build_plan(
    request: WorkflowRequest,
    market_signals: Optional[Sequence[MarketSignal]] = None,
    history: Optional[HistorySummary] = None,
    workflow_id: Optional[WorkflowId] = None,
) -> ActionPlan:
    """Convenience wrapper around ``PlanBuilder(history).build_plan``."""
    return PlanBuilder(history=history).build_plan(request, market_signals, workflow_id)


def plan_shape(plan: ActionPlan) -> List[Tuple[str, str, Tuple[Tuple[str, object], ...], Tuple[str, ...]]]:
    """Structural fingerprint of a plan: (id, environment, action, deps) per step."""
    return [
        (
            step.id,
            step.environment.value,
            tuple(sorted(step.action.items())),
            tuple(step.depends_on),
        )
        for step in plan.steps
    ]
