"""
metagent - stage-based agent task orchestrator.

Runs long-lived tasks through a fixed stage pipeline by repeatedly launching
an external coding/writing agent and waiting for it to call `metagent finish`.
"""

__version__ = "0.4.0"
__all__ = ["__version__"]
