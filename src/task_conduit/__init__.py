"""Local task-delegation server for command-line coding agents."""

__version__ = "0.1.0"
