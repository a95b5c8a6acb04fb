"""Core modules for TaskForge."""
