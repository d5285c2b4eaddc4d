"""agentgate: control plane for a tool-executing autonomous agent."""

__version__ = "0.1.0"
