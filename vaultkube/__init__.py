"""vaultkube — one-way reconciliation of vault items into Kubernetes Secrets."""

__version__ = "0.1.0"
