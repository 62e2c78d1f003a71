"""
Entry point for running metagent as a module.

Allows running as: python -m metagent
"""

from metagent.cli import cli_main

if __name__ == "__main__":
    cli_main()
