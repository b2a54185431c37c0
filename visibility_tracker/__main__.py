"""
Entry point for running the visibility tracker as a module.

Enables execution via:
    python -m visibility_tracker [command] [options]

This is equivalent to running the installed CLI:
    visibility-tracker [command] [options]
"""

from visibility_tracker.cli import app

if __name__ == "__main__":
    app()
