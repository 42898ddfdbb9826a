"""
types - Core type definitions for the conductor runtime

This package provides the data model shared by the Plan Builder, Execution
Engine, Adaptation Loop, Evolution Controller and Metrics & History Store.
All types are dataclasses or enums (WorkflowRequest is a frozen pydantic
model) with module-level ``*_to_dict`` / ``*_from_dict`` serializers.

Usage:
    from conductor.runtime.types import (
        WorkflowRequest, Mode, EnvironmentHint, WorkflowState, WorkflowEvent,
        ActionPlan, Step, StepStatus, Environment, ExecutionResult,
        Decision, ProposedAction, AdaptationKind, RiskLevel, ExecutionStrategy,
        Evidence, EvidenceAnalysis, ElementObservation, MarketSignal,
        DecisionContext, TerminalContext, VisualContext, MarketContext,
        MetricVector, EvolutionGeneration, EvolutionOutcome,
        PerformanceMetrics, WorkflowOutcome, OutcomeStatus, HistorySummary,
        WorkflowResult, NextAction,
        generate_workflow_id,
    )
"""

from __future__ import annotations

from ._ids import PlanId, StepId, WorkflowId, generate_plan_id, generate_workflow_id
from .decision import (
    AdaptationKind,
    ContextFragment,
    Decision,
    DecisionContext,
    ElementObservation,
    Evidence,
    EvidenceAnalysis,
    ExecutionStrategy,
    MarketContext,
    MarketSignal,
    ProposedAction,
    RiskLevel,
    TerminalContext,
    VisualContext,
    decision_from_dict,
    decision_to_dict,
    evidence_to_dict,
)
from .metrics import (
    OBJECTIVES,
    EvolutionGeneration,
    EvolutionOutcome,
    HistorySummary,
    MetricVector,
    OutcomeStatus,
    PerformanceMetrics,
    WorkflowOutcome,
    evolution_generation_to_dict,
    performance_metrics_from_dict,
    performance_metrics_to_dict,
    workflow_outcome_from_dict,
    workflow_outcome_to_dict,
)
from .plan import (
    TERMINAL_STEP_STATUSES,
    ActionPlan,
    Environment,
    ExecutionResult,
    Step,
    StepStatus,
    action_plan_from_dict,
    action_plan_to_dict,
    execution_result_from_dict,
    execution_result_to_dict,
    step_from_dict,
    step_to_dict,
)
from .result import NextAction, WorkflowResult, workflow_result_to_dict
from .workflow import (
    TERMINAL_WORKFLOW_STATES,
    WORKFLOW_TRANSITIONS,
    EnvironmentHint,
    Mode,
    WorkflowEvent,
    WorkflowRequest,
    WorkflowState,
    workflow_event_to_dict,
    workflow_request_from_dict,
    workflow_request_to_dict,
)

__all__ = [
    # IDs
    "WorkflowId",
    "PlanId",
    "StepId",
    "generate_workflow_id",
    "generate_plan_id",
    # Workflow
    "Mode",
    "EnvironmentHint",
    "WorkflowState",
    "TERMINAL_WORKFLOW_STATES",
    "WORKFLOW_TRANSITIONS",
    "WorkflowRequest",
    "WorkflowEvent",
    "workflow_request_to_dict",
    "workflow_request_from_dict",
    "workflow_event_to_dict",
    # Plan
    "Environment",
    "StepStatus",
    "TERMINAL_STEP_STATUSES",
    "Step",
    "ActionPlan",
    "ExecutionResult",
    "step_to_dict",
    "step_from_dict",
    "action_plan_to_dict",
    "action_plan_from_dict",
    "execution_result_to_dict",
    "execution_result_from_dict",
    # Decisions and evidence
    "RiskLevel",
    "ExecutionStrategy",
    "AdaptationKind",
    "ProposedAction",
    "Decision",
    "ElementObservation",
    "EvidenceAnalysis",
    "Evidence",
    "MarketSignal",
    "TerminalContext",
    "VisualContext",
    "MarketContext",
    "ContextFragment",
    "DecisionContext",
    "decision_to_dict",
    "decision_from_dict",
    "evidence_to_dict",
    # Metrics
    "OBJECTIVES",
    "MetricVector",
    "EvolutionGeneration",
    "EvolutionOutcome",
    "OutcomeStatus",
    "PerformanceMetrics",
    "WorkflowOutcome",
    "HistorySummary",
    "performance_metrics_to_dict",
    "performance_metrics_from_dict",
    "evolution_generation_to_dict",
    "workflow_outcome_to_dict",
    "workflow_outcome_from_dict",
    # Results
    "NextAction",
    "WorkflowResult",
    "workflow_result_to_dict",
]
