"""EternalStash: durable history of container image usage in a Kubernetes cluster."""

__version__ = "0.1.0"
