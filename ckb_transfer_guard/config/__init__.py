"""
Configuration for the transfer guard.

Loads settings from environment variables and an optional .env file.
"""

from ckb_transfer_guard.config.env import load_guard_env
from ckb_transfer_guard.config.settings import GuardSettings, get_settings

__all__ = ["GuardSettings", "get_settings", "load_guard_env"]
