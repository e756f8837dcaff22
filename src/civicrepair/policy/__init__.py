"""Marketplace policy configuration."""

from civicrepair.policy.resolver import PolicyResolver

__all__ = ["PolicyResolver"]
