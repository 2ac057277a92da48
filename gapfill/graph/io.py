"""Plan file loading and atomic saving."""

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from .dag import GraphError, TaskGraph

logger = logging.getLogger(__name__)


class PlanFileError(Exception):
    """Plan file missing or invalid."""

    pass


@dataclass
class PlanDocument:
    """A plan as stored on disk."""

    graph: TaskGraph
    version: int = 0
    outcome: Optional[str] = None
    document_context: Optional[str] = None


def plan_key(plan_path: Path) -> str:
    """Stable identifier for a plan file location."""
    resolved = str(plan_path.resolve())
    return hashlib.sha1(resolved.encode("utf-8")).hexdigest()[:12]


def load_plan(plan_path: Path) -> PlanDocument:
    """Load a YAML or JSON plan file.

    Args:
        plan_path: Path to plan file

    Returns:
        PlanDocument

    Raises:
        PlanFileError: If the file is missing, unparsable or structurally invalid
    """
    if not plan_path.exists():
        raise PlanFileError(f"Plan file not found: {plan_path}")

    try:
        with open(plan_path, "r") as f:
            if plan_path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PlanFileError(f"Invalid plan file {plan_path}: {e}")

    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        raise PlanFileError(f"Plan file must contain a 'tasks' list: {plan_path}")

    try:
        graph = TaskGraph.from_list(data["tasks"])
        graph.topological_order()
    except (ValidationError, GraphError) as e:
        raise PlanFileError(f"Invalid plan in {plan_path}: {e}")

    return PlanDocument(
        graph=graph,
        version=int(data.get("version") or 0),
        outcome=data.get("outcome"),
        document_context=data.get("document_context"),
    )


def save_plan(document: PlanDocument, plan_path: Path) -> None:
    """Save plan with atomic write.

    Args:
        document: Plan to save
        plan_path: Destination path
    """
    data = {
        "version": document.version,
        "outcome": document.outcome,
        "document_context": document.document_context,
        "tasks": document.graph.to_list(),
    }

    temp_path = plan_path.with_suffix(plan_path.suffix + ".tmp")
    with open(temp_path, "w") as f:
        if plan_path.suffix == ".json":
            json.dump(data, f, indent=2)
        else:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        f.flush()
    temp_path.replace(plan_path)
    logger.debug(f"Saved plan v{document.version} to {plan_path}")
