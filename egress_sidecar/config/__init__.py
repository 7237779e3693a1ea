"""Configuration module."""

from egress_sidecar.config.settings import EgressSettings

__all__ = ["EgressSettings"]
