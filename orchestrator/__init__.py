"""
Preview Orchestrator
====================

Runs per-site development servers from git workspaces, applies incremental
patches to them, routes subdomain traffic to the right server and promotes
accepted changes back to the source repository.
"""

__version__ = "0.1.0"
