"""Durable state for GitHub Runner Controller."""

from .state_store import SqlStateStore, create_controller_engine

__all__ = ["SqlStateStore", "create_controller_engine"]
