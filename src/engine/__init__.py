"""
Execution engine integration for published templates.

Exports:
- ExecutionEngine: Contract used by the lifecycle coordinator
- HttpExecutionEngine: Flowable-style REST adapter
- InMemoryExecutionEngine: Local engine for development and tests
- GuardedExecutionEngine: Timeout and error normalization wrapper
- DeploymentResult, InstanceCounts: Engine return values
"""

from src.engine.client import (
    DeploymentResult,
    ExecutionEngine,
    GuardedExecutionEngine,
    HttpExecutionEngine,
    InMemoryExecutionEngine,
    InstanceCounts,
)

__all__ = [
    "DeploymentResult",
    "ExecutionEngine",
    "GuardedExecutionEngine",
    "HttpExecutionEngine",
    "InMemoryExecutionEngine",
    "InstanceCounts",
]
