"""Model clients for TaskForge agents."""

from taskforge.agents.model import AnthropicModelClient, ModelClient, ModelTurn, ToolCall

__all__ = ["AnthropicModelClient", "ModelClient", "ModelTurn", "ToolCall"]
