"""
Environment-driven defaults.
"""

import os

DEBUG_MODE_ENV = 'FSM_DEBUG_MODE'
VERBOSE_ENV = 'FSM_VERBOSE'


def env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean flag such as ``FSM_DEBUG_MODE=true`` from the environment"""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')
