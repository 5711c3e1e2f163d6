"""agentlink: streaming conversations with remote coding agents."""

__version__ = "0.1.0"
