"""
TaskPilot - Automated execution of markdown task lists.

This package discovers checklist task documents in workspaces, hands each
ready task to an agent, writes progress back into the documents and keeps
resumable session checkpoints.
"""

from .__version__ import __version__

# Import main modules for easy access
from . import config
from . import core
from . import parsers
from . import utils

# Define what gets imported with "from taskpilot import *"
__all__ = [
    "config",
    "core",
    "parsers",
    "utils",
    "__version__"
]


# Define the CLI entry point function
def main():
    """Main entry point for the CLI."""
    from .cli import main as cli_main
    return cli_main()
