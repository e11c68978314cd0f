"""Capability providers and the registry that routes module calls to them."""

from autodev.modules.base import (
    Capability,
    CapabilityProvider,
    ModuleRequest,
    ModuleResponse,
)
from autodev.modules.registry import ModuleRegistry, RetryPolicy

__all__ = [
    "Capability",
    "CapabilityProvider",
    "ModuleRegistry",
    "ModuleRequest",
    "ModuleResponse",
    "RetryPolicy",
]
