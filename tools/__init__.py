"""Dehazing - Offline Processing Tools"""

from .offline_processor import build_parser, dehaze_file, main

__all__ = [
    'build_parser',
    'dehaze_file',
    'main',
]
__version__ = '1.0.0'
