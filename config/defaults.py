"""
Default configuration values for kv-relations.

Centralized defaults that can be overridden by environment variables or config files.
"""

from typing import Any, Dict
import copy

# Global default settings
DEFAULT_SETTINGS = {
    # Redis connection
    "redis": {
        "url": "redis://localhost:6379/0",
        "socket_timeout": 5.0,
        "max_connections": 16,
        "key_delimiter": ":"
    },

    # Audit and repair tuning
    "audit": {
        "batch_size": 100,
        "sample_size": None,  # Check every multi-index member
        "rebuild_threshold": 0,
        "repair_batch_size": 100
    },

    "log_level": "INFO",
    "version": "1.0.0"
}

# Default config file name, looked up in the working directory
CONFIG_FILENAME = "kv-relations.json"

# Environment variable mappings
ENV_VAR_MAPPING = {
    'KVR_REDIS_URL': 'redis.url',
    'KVR_REDIS_TIMEOUT': 'redis.socket_timeout',
    'KVR_REDIS_MAX_CONNECTIONS': 'redis.max_connections',
    'KVR_BATCH_SIZE': 'audit.batch_size',
    'KVR_SAMPLE_SIZE': 'audit.sample_size',
    'KVR_REBUILD_THRESHOLD': 'audit.rebuild_threshold',
    'KVR_REPAIR_BATCH_SIZE': 'audit.repair_batch_size',
    'KVR_LOG_LEVEL': 'log_level'
}


def get_default_config() -> Dict[str, Any]:
    """Get a mutable copy of the default configuration"""
    return copy.deepcopy(DEFAULT_SETTINGS)
