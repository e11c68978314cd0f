"""Safety primitives for the autodev core."""

from autodev.security.commands import ActionTracker, CommandPolicy
from autodev.security.policy import SafetyValidator

__all__ = ["ActionTracker", "CommandPolicy", "SafetyValidator"]
