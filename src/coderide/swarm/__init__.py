"""Agent swarm: roles, planning and ordered parallel execution."""

from coderide.swarm.types import AgentRole, AgentTask, group_by_order

__all__ = ["AgentRole", "AgentTask", "group_by_order"]
