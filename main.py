"""
Main entry point for running dlengine from a source checkout.

The installed `dlengine` command runs the same Typer app.
"""

from dlengine.cli import app

if __name__ == "__main__":
    app()
