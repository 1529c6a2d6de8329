"""State management module for tracking deployed resources."""

from .manager import StateManager, state_path_for
from .models import Resource, State

__all__ = [
    "Resource",
    "State",
    "StateManager",
    "state_path_for",
]
