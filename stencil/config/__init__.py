from .loader import load_config
from .models import (
    COMPONENTS,
    BackupConfig,
    MergeConfig,
    SourceConfig,
    StencilConfig,
    TrackingConfig,
    ValidationConfig,
)

__all__ = [
    "BackupConfig",
    "COMPONENTS",
    "MergeConfig",
    "SourceConfig",
    "StencilConfig",
    "TrackingConfig",
    "ValidationConfig",
    "load_config",
]
