"""
Configuration Module

Type-safe settings loaded from the environment.
"""

from tasktree.config.settings import (
    BudgetSettings,
    EngineSettings,
    ObservabilitySettings,
    ProviderSettings,
    RedisSettings,
    Settings,
    StoreSettings,
    WorkerSettings,
    get_settings,
)

__all__ = [
    "BudgetSettings",
    "EngineSettings",
    "ObservabilitySettings",
    "ProviderSettings",
    "RedisSettings",
    "Settings",
    "StoreSettings",
    "WorkerSettings",
    "get_settings",
]
