"""
Dehazing - AI Inference Module Package
"""

from .model_registry import MODELS, get_default_model, get_model
from .ai_inference import (
    AcceleratedDehazer,
    BackendDetector,
    get_device_info,
    load_accelerated_backend,
)

__all__ = [
    'AcceleratedDehazer',
    'BackendDetector',
    'MODELS',
    'get_default_model',
    'get_model',
    'get_device_info',
    'load_accelerated_backend',
]
__version__ = '1.0.0'
