from .loader import load_config, load_config_with_overrides
from .schema import (
    ConflictConfig,
    DataSourceVersions,
    ExecutionConfig,
    PipelineConfig,
    PropagationConfig,
)

__all__ = [
    "load_config",
    "load_config_with_overrides",
    "PipelineConfig",
    "DataSourceVersions",
    "PropagationConfig",
    "ConflictConfig",
    "ExecutionConfig",
]
