"""
Portaudit package.

Concurrent port scanning with service identification, passive OS
fingerprinting and vulnerability correlation against a pluggable
knowledge base.
"""

from .cli import main
from .config import DetectionOptions, ScannerConfig
from .scanner import ScanSession

__all__ = ["DetectionOptions", "ScanSession", "ScannerConfig", "main"]
