"""API routes for TaskForge.

Includes:
- generate: streamed code generation (SSE)
- task board moves and pull requests
- sandbox management
"""

from taskforge.api.routes import router

__all__ = ["router"]
