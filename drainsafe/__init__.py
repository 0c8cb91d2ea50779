"""Cordon and drain Kubernetes nodes ahead of Azure scheduled maintenance."""

__version__ = "0.1.0"
