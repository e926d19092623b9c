"""Phased, wave-ordered synchronization of Kubernetes resources with hooks and pruning."""

__version__ = "0.1.0"