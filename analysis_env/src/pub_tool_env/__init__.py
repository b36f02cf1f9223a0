from .tool_env_config import (
    MAX_COUNT,
    MAX_SIZE_BYTES,
    ToolEnvConfig,
    set_tool_env_defaults,
    reset_tool_env_defaults,
    resolve_tool_env_config,
)

# Directory size accounting
from .dir_size import (
    calc_directory_size,
    calc_subdir_sizes,
    log_size_changes,
)

# Environments and the pool
from .tool_environment import Channel, EnvironmentInitFailure, ToolEnvironment
from .tool_env_ref import ToolEnvRef
from .tool_env_pool import ToolEnvPool, get_default_pool, close_default_pool

__all__ = [
    # Configuration
    "MAX_COUNT",
    "MAX_SIZE_BYTES",
    "ToolEnvConfig",
    "set_tool_env_defaults",
    "reset_tool_env_defaults",
    "resolve_tool_env_config",
    # Directory sizes
    "calc_directory_size",
    "calc_subdir_sizes",
    "log_size_changes",
    # Pool
    "Channel",
    "EnvironmentInitFailure",
    "ToolEnvironment",
    "ToolEnvRef",
    "ToolEnvPool",
    "get_default_pool",
    "close_default_pool",
]
