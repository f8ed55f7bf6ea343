"""Command-line entry points for ChatArbor maintenance tasks."""
