"""
Page automations runnable as tasks.
"""

from automations.base import Automation, AutomationRegistry, ParamSpec
from automations.navigate import NavigateAutomation


def default_registry() -> AutomationRegistry:
    """Registry with every built-in automation."""
    return AutomationRegistry([NavigateAutomation()])


__all__ = [
    "Automation",
    "AutomationRegistry",
    "NavigateAutomation",
    "ParamSpec",
    "default_registry",
]
