"""
Configuration module for the DBS workflow.

This module provides centralized configuration management using pydantic-settings,
ensuring type-safe access to environment variables and configuration parameters.

Example:
    >>> from config import get_settings
    >>> settings = get_settings()
    >>> print(settings.sampling.chains)
    >>> print(settings.diagnostics.pareto_k_threshold)
"""

from config.settings import (
    Settings,
    DataSettings,
    SamplingSettings,
    DiagnosticsSettings,
    CacheSettings,
    get_settings,
)

__all__ = [
    "Settings",
    "DataSettings",
    "SamplingSettings",
    "DiagnosticsSettings",
    "CacheSettings",
    "get_settings",
]
