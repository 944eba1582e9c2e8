"""
kgflow Configuration
====================

- PipelineSettings: scoring weights, batching, pagination, timeouts
- load_pipeline_settings / get_default_settings: YAML loader with fallbacks
"""

from kgflow.config.settings import (
    DEFAULT_CONFIG_PATH,
    RERANK_STRATEGIES,
    PipelineSettings,
    get_default_settings,
    load_pipeline_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "RERANK_STRATEGIES",
    "PipelineSettings",
    "get_default_settings",
    "load_pipeline_settings",
]
