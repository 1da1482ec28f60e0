"""File based storage for workflow and rule definitions."""

from __future__ import annotations

import fcntl
import json
import os
import re
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ValidationError

from .errors import DefinitionNotFound, StorageError, StructuralError
from .schema import Workflow, WorkflowRule

_VERSION_RE = re.compile(r"-v(\d+)\.json$")


def _version_of(path: Path) -> int:
    match = _VERSION_RE.search(path.name)
    return int(match.group(1)) if match else 0


class DefinitionStore:
    """Stores workflows as versioned JSON files and rules as one JSON file each.

    Layout::

        <base_dir>/workflows/<id>-v<version>.json
        <base_dir>/rules/<id>.json
        <base_dir>/.definitions.lock

    Every write happens under one exclusive lock (a thread lock plus
    ``flock`` on the lock file, so API workers in other processes take turns
    too) and lands through a rename, so readers only ever see complete
    definitions.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir
        self.workflows_dir = base_dir / "workflows"
        self.rules_dir = base_dir / "rules"
        self.lock_path = base_dir / ".definitions.lock"
        self._thread_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def save_workflow(self, workflow: Workflow) -> str:
        """Save a workflow version and return its ID."""
        with self._exclusive():
            self._write(self.workflows_dir / f"{workflow.id}-v{workflow.version}.json", workflow, by_alias=True)
        return workflow.id

    def load_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Load the latest version of a workflow by ID."""
        matches = self._versions(workflow_id)
        if not matches:
            return None
        return _parse(Workflow, matches[-1])

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.load_workflow(workflow_id)
        if workflow is None:
            raise DefinitionNotFound(f"Workflow not found: {workflow_id}")
        return workflow

    def list_workflows(self, active: Optional[bool] = None) -> list[Workflow]:
        """Latest version of every stored workflow."""
        if not self.workflows_dir.exists():
            return []
        ids = sorted({_VERSION_RE.sub("", path.name) for path in self.workflows_dir.glob("*-v*.json")})
        workflows = [self.get_workflow(workflow_id) for workflow_id in ids]
        if active is not None:
            workflows = [wf for wf in workflows if wf.is_active == active]
        return workflows

    def delete_workflow(self, workflow_id: str) -> bool:
        """Delete all versions of a workflow. Returns True if any were deleted."""
        with self._exclusive():
            matches = self._versions(workflow_id)
            self._remove(*matches)
        return len(matches) > 0

    def _versions(self, workflow_id: str) -> list[Path]:
        if not self.workflows_dir.exists():
            return []
        return sorted(self.workflows_dir.glob(f"{workflow_id}-v*.json"), key=_version_of)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def save_rule(self, rule: WorkflowRule) -> str:
        with self._exclusive():
            self._write(self._rule_path(rule.id), rule)
        return rule.id

    def load_rule(self, rule_id: str) -> Optional[WorkflowRule]:
        path = self._rule_path(rule_id)
        if not path.exists():
            return None
        return _parse(WorkflowRule, path)

    def get_rule(self, rule_id: str) -> WorkflowRule:
        rule = self.load_rule(rule_id)
        if rule is None:
            raise DefinitionNotFound(f"Rule not found: {rule_id}")
        return rule

    def list_rules(
        self,
        entity_type: Optional[str] = None,
        active: Optional[bool] = None,
        scheduled: Optional[bool] = None,
    ) -> list[WorkflowRule]:
        if not self.rules_dir.exists():
            return []
        rules = [_parse(WorkflowRule, path) for path in sorted(self.rules_dir.glob("*.json"))]
        if entity_type is not None:
            rules = [rule for rule in rules if rule.entity_type == entity_type]
        if active is not None:
            rules = [rule for rule in rules if rule.is_active == active]
        if scheduled is not None:
            rules = [rule for rule in rules if rule.is_scheduled == scheduled]
        return rules

    def delete_rule(self, rule_id: str) -> bool:
        with self._exclusive():
            path = self._rule_path(rule_id)
            if not path.exists():
                return False
            self._remove(path)
        return True

    def record_firings(self, rule_id: str, count: int, at: datetime) -> WorkflowRule:
        """Add ``count`` to a rule's execution counter and stamp ``last_executed_at``.

        The read-modify-write happens under the store lock so concurrent
        batches never lose an increment.
        """
        with self._exclusive():
            rule = self.get_rule(rule_id)
            rule.execution_count += count
            rule.last_executed_at = at
            self._write(self._rule_path(rule.id), rule)
        return rule

    def set_rule_active(self, rule_id: str, is_active: bool) -> WorkflowRule:
        with self._exclusive():
            rule = self.get_rule(rule_id)
            rule.is_active = is_active
            self._write(self._rule_path(rule.id), rule)
        return rule

    def _rule_path(self, rule_id: str) -> Path:
        return self.rules_dir / f"{rule_id}.json"

    # ------------------------------------------------------------------
    # File handling
    # ------------------------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._thread_lock:
            try:
                self.base_dir.mkdir(parents=True, exist_ok=True)
                lock_file = self.lock_path.open("a+", encoding="utf-8")
            except OSError as e:
                raise StorageError(f"Cannot lock definition store at {self.base_dir}: {e}") from e
            with lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _write(self, path: Path, definition: BaseModel, by_alias: bool = False) -> None:
        # Partial files never match the *.json globs used for listing.
        partial = path.with_name(f".{path.stem}.{os.getpid()}.partial")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with partial.open("w", encoding="utf-8") as handle:
                handle.write(definition.model_dump_json(indent=2, by_alias=by_alias))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(partial, path)
        except OSError as e:
            raise StorageError(f"Cannot write definition {path.name}: {e}") from e
        finally:
            if partial.exists():
                partial.unlink()

    def _remove(self, *paths: Path) -> None:
        for path in paths:
            try:
                path.unlink()
            except OSError as e:
                raise StorageError(f"Cannot delete definition {path.name}: {e}") from e


def _parse(model: Any, path: Path) -> Any:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return model.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        raise StructuralError("invalid_definition", f"{path.name}: {e}") from e
