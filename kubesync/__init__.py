"""kubesync: converge component deployments and stream source into running containers."""

__version__ = "0.1.0"
