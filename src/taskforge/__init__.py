"""TaskForge - AI code generation in sandboxes, tracked on a task board."""

__version__ = "0.1.0"
