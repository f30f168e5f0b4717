"""Core configuration and clock helpers for capvault."""

from .clock import Clock, now_ms
from .config import BrokerConfig, VaultConfig

__all__ = [
    "BrokerConfig",
    "Clock",
    "VaultConfig",
    "now_ms",
]
