"""DeployFlow - Git-to-URL deployment orchestrator."""

__version__ = "1.0.0"
