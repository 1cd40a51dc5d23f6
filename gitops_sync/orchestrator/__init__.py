"""Orchestration of the controller components."""

from .loader import ApplicationLoader, LoadOptions
from .orchestrator import Orchestrator

__all__ = ["ApplicationLoader", "LoadOptions", "Orchestrator"]
