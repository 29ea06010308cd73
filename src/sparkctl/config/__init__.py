"""
Configuration Module

YAML-backed, pydantic-validated settings for sparkctl.
"""
from .loader import (
    Config,
    ClusterMemoryProfile,
    LocalRunProfile,
    load_config,
    save_config
)

__all__ = [
    "Config",
    "ClusterMemoryProfile",
    "LocalRunProfile",
    "load_config",
    "save_config"
]
