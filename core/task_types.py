"""
Task Types

Built-in types come from the automation registry. Custom types are stored
chains of built-in steps with ${param} placeholders, e.g.:

    id: open_dashboard
    name: Open dashboard
    parameters:
      - {name: host, required: true}
    subtasks:
      - {type: navigate, url: "https://${host}/login"}
      - {type: navigate, url: "https://${host}/dashboard", selector: "#main"}
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from core.errors import MissingParameterError, UnknownTaskTypeError
from core.models import SubTask

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def substitute(value: str, params: Dict[str, Any]) -> str:
    """Replace ${name} with params[name]; unknown names become empty."""
    return PLACEHOLDER.sub(lambda m: str(params.get(m.group(1), "") or ""), value)


def build_subtasks(task_type: Dict[str, Any], params: Dict[str, Any]) -> List[SubTask]:
    """
    Instantiate a custom task type's steps with concrete parameters.

    Raises:
        MissingParameterError: a required parameter is absent or blank
    """
    for param in task_type.get("parameters") or []:
        if param.get("required") and _blank(params.get(param["name"])):
            raise MissingParameterError(param["name"])

    subtasks = []
    for index, step in enumerate(task_type.get("subtasks") or []):
        step = dict(step)
        step_type = step.pop("type")
        resolved = {}
        for key, value in step.items():
            if isinstance(value, str) and "${" in value:
                value = substitute(value, params).strip()
                if not value:
                    continue
            resolved[key] = value
        subtasks.append(SubTask(index=index, type=step_type, params=resolved))
    return subtasks


class TaskTypeCatalog:
    """Built-in plus custom task types."""

    def __init__(self, repository: Any, registry: Any):
        self.repository = repository
        self.registry = registry

    def builtin_types(self) -> List[Dict[str, Any]]:
        return self.registry.builtin_types()

    async def list_custom(self) -> List[Dict[str, Any]]:
        return await self.repository.list_task_types()

    async def get(self, type_id: str) -> Dict[str, Any]:
        task_type = await self.repository.find_task_type(type_id)
        if task_type is None:
            raise UnknownTaskTypeError(f"Task type not found: {type_id}")
        return task_type

    def validate(self, task_type: Dict[str, Any]):
        """Raises ValueError when a definition cannot be run."""
        if _blank(task_type.get("name")):
            raise ValueError("Task type needs a name")
        steps = task_type.get("subtasks") or []
        if not steps:
            raise ValueError("Task type needs at least one subtask")
        for i, step in enumerate(steps):
            step_type = step.get("type") if isinstance(step, dict) else None
            if not step_type:
                raise ValueError(f"Subtask {i + 1} has no type")
            if step_type not in self.registry:
                raise UnknownTaskTypeError(f"Unknown task type: {step_type}")
        for param in task_type.get("parameters") or []:
            if _blank(param.get("name")):
                raise ValueError("Task type parameters need a name")

    async def create(self, task_type: Dict[str, Any]) -> Dict[str, Any]:
        self.validate(task_type)
        return await self.repository.create_task_type(task_type)

    async def update(self, type_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        existing = await self.get(type_id)
        merged = {**existing, **{k: v for k, v in updates.items() if v is not None}}
        self.validate(merged)
        return await self.repository.update_task_type(existing["id"], updates)

    async def delete(self, type_id: str):
        existing = await self.get(type_id)
        await self.repository.delete_task_type(existing["id"])

    async def instantiate(self, type_id: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve a type into ``{"name", "subtasks", "task_type"}`` ready for a chained task."""
        task_type = await self.get(type_id)
        return {
            "name": params.get("name") or task_type["name"],
            "subtasks": build_subtasks(task_type, params),
            "task_type": task_type,
        }


async def seed_task_types(repository: Any, path: Union[str, Path], registry: Optional[Any] = None) -> int:
    """
    Load task types from a YAML file, skipping ids that already exist.

    Returns the number of types created.
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"No task type seed file at {path}")
        return 0

    with open(path) as f:
        data = yaml.safe_load(f) or []
    entries = data.get("task_types", []) if isinstance(data, dict) else data

    catalog = TaskTypeCatalog(repository, registry) if registry is not None else None
    created = 0
    for entry in entries:
        if entry.get("id") and await repository.get_task_type(entry["id"]):
            continue
        try:
            if catalog is not None:
                catalog.validate(entry)
            await repository.create_task_type(entry)
            created += 1
        except (ValueError, UnknownTaskTypeError) as e:
            logger.warning(f"Skipping task type {entry.get('id') or entry.get('name')}: {e}")

    if created:
        logger.info(f"Seeded {created} task types from {path}")
    return created
