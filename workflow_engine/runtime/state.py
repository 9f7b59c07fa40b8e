# workflow_engine/runtime/state.py
"""
Run State Management - per-run execution state and its persistence.

ExecutionState is the mutable record a single run owns. RunStateStore keeps
completed runs as JSON documents so they can be listed and inspected later.
"""

import json
import re
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..engine_logging import get_logger
from ..errors import ErrorClass
from ..models import RunResult, RunStatus, StepError, StepResult, StepStatus, TERMINAL_STATUSES

logger = get_logger(__name__)


@dataclass
class ExecutionState:
    """Step statuses, results and buffered context writes for one run"""
    run_id: str
    graph_name: str
    statuses: Dict[str, StepStatus] = field(default_factory=dict)
    results: Dict[str, StepResult] = field(default_factory=dict)
    writes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @classmethod
    def for_steps(cls, run_id: str, graph_name: str, step_ids: List[str]) -> "ExecutionState":
        state = cls(run_id=run_id, graph_name=graph_name)
        for step_id in step_ids:
            state.statuses[step_id] = StepStatus.PENDING
            state.results[step_id] = StepResult(step_id=step_id, status=StepStatus.PENDING)
        return state

    def status(self, step_id: str) -> StepStatus:
        return self.statuses[step_id]

    def set_status(self, step_id: str, status: StepStatus) -> None:
        self.statuses[step_id] = status
        self.results[step_id].status = status

    def start(self, step_id: str) -> None:
        self.set_status(step_id, StepStatus.RUNNING)
        self.results[step_id].started_at = time.time()

    def finish(self, step_id: str, result: StepResult) -> None:
        if result.started_at is None:
            result.started_at = self.results[step_id].started_at
        if result.completed_at is None:
            result.completed_at = time.time()
        self.results[step_id] = result
        self.statuses[step_id] = result.status

    def is_terminal(self, step_id: str) -> bool:
        return self.statuses[step_id] in TERMINAL_STATUSES

    def pending(self) -> List[str]:
        return [step_id for step_id, status in self.statuses.items() if status == StepStatus.PENDING]

    def count(self, status: StepStatus) -> int:
        return sum(1 for value in self.statuses.values() if value == status)


def _step_error_from_dict(data: Optional[Dict[str, Any]]) -> Optional[StepError]:
    if not data:
        return None
    data = dict(data)
    data["error_class"] = ErrorClass(data["error_class"])
    return StepError(**data)


def run_result_from_dict(data: Dict[str, Any]) -> RunResult:
    """Rebuild a RunResult from ``RunResult.to_dict`` output."""
    step_results = {}
    for step_id, raw in data.get("steps", {}).items():
        raw = dict(raw)
        raw.pop("duration_s", None)
        raw["status"] = StepStatus(raw["status"])
        raw["error"] = _step_error_from_dict(raw.get("error"))
        step_results[step_id] = StepResult(**raw)

    return RunResult(
        run_id=data["run_id"],
        final_context=data.get("final_context", {}),
        step_results=step_results,
        overall_status=RunStatus(data["overall_status"]),
        errors=[_step_error_from_dict(error) for error in data.get("errors", [])],
        compensation_order=list(data.get("compensation_order", [])),
        cancelled=data.get("cancelled", False),
        started_at=data.get("started_at", 0.0),
        completed_at=data.get("completed_at", 0.0),
    )


class RunStateStore:
    """
    Persistent storage for completed runs.

    One JSON document per run under ``storage_path``; values that are not
    JSON serializable are stored as strings.
    """

    def __init__(self, storage_path: Optional[Path] = None):
        self.storage_path = Path(storage_path) if storage_path else Path("artifacts/runs")
        self.storage_path.mkdir(parents=True, exist_ok=True)
        logger.info(f"Run state store initialized at {self.storage_path}")

    def _safe_name(self, s: str) -> str:
        """Sanitize identifiers for filesystem safety across OSes.
        Replaces disallowed characters with '_'.
        """
        return re.sub(r"[^A-Za-z0-9._-]", "_", s or "")

    def _path(self, run_id: str) -> Path:
        return self.storage_path / f"{self._safe_name(run_id)}.json"

    async def save_run(self, result: RunResult, graph_name: str = "") -> bool:
        """
        Save a run result to persistent storage

        Args:
            result: Completed run
            graph_name: Name of the workflow graph, kept for listings

        Returns:
            Success status
        """
        try:
            data = result.to_dict()
            data["graph_name"] = graph_name
            data["duration_s"] = result.completed_at - result.started_at

            with open(self._path(result.run_id), 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, default=str)

            logger.debug(f"Saved run state for {result.run_id}", extra={'run_id': result.run_id})
            return True

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error saving run state {result.run_id}: {e}", extra={'run_id': result.run_id})
            return False

    async def get_run(self, run_id: str) -> Optional[RunResult]:
        """
        Load a run from storage

        Returns:
            RunResult or None if not found
        """
        state_file = self._path(run_id)
        if not state_file.exists():
            return None

        try:
            with open(state_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return run_result_from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Error loading run state {run_id}: {e}", extra={'run_id': run_id})
            return None

    async def list_runs(self, status_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List stored runs, most recent first

        Args:
            status_filter: Optional overall status to filter by
        """
        runs = []
        for state_file in self.storage_path.glob("*.json"):
            try:
                with open(state_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not read run state file {state_file}: {e}")
                continue

            if status_filter and data.get("overall_status") != status_filter:
                continue

            runs.append({
                "run_id": data.get("run_id"),
                "graph_name": data.get("graph_name", ""),
                "overall_status": data.get("overall_status"),
                "started_at": data.get("started_at"),
                "completed_at": data.get("completed_at"),
                "duration_s": data.get("duration_s"),
                "step_count": len(data.get("steps", {})),
                "error_count": len(data.get("errors", [])),
            })

        runs.sort(key=lambda r: r.get("started_at") or 0, reverse=True)
        return runs

    async def delete_run(self, run_id: str) -> bool:
        state_file = self._path(run_id)
        if not state_file.exists():
            return False
        try:
            state_file.unlink()
        except OSError as e:
            logger.error(f"Error deleting run {run_id}: {e}", extra={'run_id': run_id})
            return False
        logger.info(f"Deleted run {run_id}", extra={'run_id': run_id})
        return True

    def clear(self) -> None:
        """Remove every stored run."""
        if self.storage_path.exists():
            shutil.rmtree(self.storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
