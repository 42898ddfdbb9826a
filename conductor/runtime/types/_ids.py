"""ID types and generators for the types package.

Provides workflow, plan and event ID generation, plus type aliases.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timezone

# Type aliases
WorkflowId = str
PlanId = str
StepId = str


def _random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(length))


def _generate_event_id() -> str:
    """Generate a globally unique event ID."""
    return str(uuid.uuid4())


def generate_workflow_id() -> WorkflowId:
    """Generate a unique workflow ID.

    Creates IDs in the format: wf-YYYYMMDD-HHMMSS-xxxxxx
    where xxxxxx is a random 6-character alphanumeric suffix.

    Returns:
        A unique workflow identifier string.

    Example:
        >>> workflow_id = generate_workflow_id()
        >>> workflow_id  # e.g., "wf-20251208-143022-abc123"
    """
    now = datetime.now(timezone.utc)
    timestamp = now.strftime("%Y%m%d-%H%M%S")
    return f"wf-{timestamp}-{_random_suffix()}"


def generate_plan_id(workflow_id: WorkflowId) -> PlanId:
    """Generate a plan ID scoped to its owning workflow."""
    return f"plan-{workflow_id}-{_random_suffix(4)}"
