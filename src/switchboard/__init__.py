"""Switchboard - turn and session orchestration for multi-provider AI chat."""

__version__ = "0.1.0"
__author__ = "Switchboard Contributors"

from .config import Config
from .orchestrator.orchestrator import TurnOrchestrator
from .state.threads import InMemoryThreadStore, Item, PlanUpdate, Thread

__all__ = ["Config", "TurnOrchestrator", "InMemoryThreadStore", "Item", "PlanUpdate", "Thread"]
