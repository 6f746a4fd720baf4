"""Shared utilities and infrastructure.

This module contains common utilities used throughout the application.
"""

from __future__ import annotations

from bitpiece.utils.exceptions import (
    BencodeError,
    BitpieceError,
    ConfigurationError,
    MetainfoError,
    NetworkError,
    ProtocolError,
    ValidationError,
    VerificationError,
)
from bitpiece.utils.logging_config import get_logger, setup_logging

__all__ = [
    "BencodeError",
    "BitpieceError",
    "ConfigurationError",
    "MetainfoError",
    "NetworkError",
    "ProtocolError",
    "ValidationError",
    "VerificationError",
    "get_logger",
    "setup_logging",
]
