"""
Automation Base Class

Page-specific logic plugs into the runner by subclassing Automation and
registering an instance.

Usage:
    class SearchAutomation(Automation):
        name = "search"
        description = "Run a search"
        params = [ParamSpec("query", "Query")]

        async def run(self, ctx, page):
            await page.goto("https://example.com/search?q=" + ctx.params["query"])
            return await page.title()

Automations report failures by raising CredentialError (needs a human, never
retried) or TransientNavigationError (retried by the runner). Anything else
goes to the generic error handler.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from core.errors import UnknownTaskTypeError


@dataclass
class ParamSpec:
    """One input an automation expects in task.params."""
    key: str
    label: str = ""
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "label": self.label or self.key, "required": self.required}


class Automation(ABC):
    """Drives one page for one task run."""

    name: str = ""
    description: str = ""
    params: List[ParamSpec] = []
    aliases: Tuple[str, ...] = ()

    def missing_params(self, params: Dict[str, Any]) -> List[str]:
        return [
            spec.key for spec in self.params
            if spec.required and (params.get(spec.key) is None or str(params.get(spec.key)).strip() == "")
        ]

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.name,
            "name": self.description or self.name,
            "params": [spec.to_dict() for spec in self.params],
        }

    @abstractmethod
    async def run(self, ctx: Any, page: Any) -> Optional[str]:
        """
        Execute against an open page.

        Args:
            ctx: TaskContext for logging, stages, screenshots and polling
            page: Playwright Page in a fresh context with cookies applied

        Returns:
            Result text stored on the completed task
        """
        pass


class AutomationRegistry:
    """Maps task type names (and aliases) to automations."""

    def __init__(self, automations: Optional[Iterable[Automation]] = None):
        self._automations: Dict[str, Automation] = {}
        self._aliases: Dict[str, str] = {}
        for automation in automations or []:
            self.register(automation)

    def register(self, automation: Automation):
        if not automation.name:
            raise ValueError(f"{type(automation).__name__} has no name")
        self._automations[automation.name] = automation
        for alias in automation.aliases:
            self._aliases[alias] = automation.name

    def get(self, type_name: str) -> Optional[Automation]:
        return self._automations.get(self._aliases.get(type_name, type_name))

    def resolve(self, type_name: str) -> Automation:
        automation = self.get(type_name)
        if automation is None:
            raise UnknownTaskTypeError(f"Unknown task type: {type_name}")
        return automation

    def __contains__(self, type_name: str) -> bool:
        return self.get(type_name) is not None

    def builtin_types(self) -> List[Dict[str, Any]]:
        return [automation.describe() for automation in self._automations.values()]
