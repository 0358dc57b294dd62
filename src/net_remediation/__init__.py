"""Cluster network remediation engine: validate, diagnose, remediate, retry."""

__version__ = "0.1.0"
