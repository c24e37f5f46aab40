"""
Shared utilities for the storm control plane and its scripts.

- logging_config: one logging setup for the service and the launchers
"""
