"""Service modules"""
from .engine import Engine
from .monitor import PositionMonitor
from .orchestrator import PreAuthOrchestrator

__all__ = ["Engine", "PositionMonitor", "PreAuthOrchestrator"]
