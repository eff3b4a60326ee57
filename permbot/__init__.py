"""permbot: compile declarative access policy into Kubernetes RBAC objects and keep them applied."""

__version__ = "0.4.0"
