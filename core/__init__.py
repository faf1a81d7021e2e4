"""Dehazing - Core Pipeline Module"""

from .errors import (
    CapabilityUnavailable,
    DecodeError,
    DehazingError,
    EncodeError,
    PipelineBusy,
    RunCancelled,
    TransformError,
)
from .pipeline import (
    CancellationToken,
    DehazingPipeline,
    PipelineConfig,
    PipelineState,
    ResultArtifact,
    SourceImage,
)
from .progress import ProgressEvent
from .resize_policy import MAX_IMAGE_DIMENSION, compute_target_size
from .transforms import PixelBuffer, ProcessingStrategy, fallback_dehaze, transform

__all__ = [
    'CancellationToken',
    'CapabilityUnavailable',
    'DecodeError',
    'DehazingError',
    'DehazingPipeline',
    'EncodeError',
    'MAX_IMAGE_DIMENSION',
    'PipelineBusy',
    'PipelineConfig',
    'PipelineState',
    'PixelBuffer',
    'ProcessingStrategy',
    'ProgressEvent',
    'ResultArtifact',
    'RunCancelled',
    'SourceImage',
    'TransformError',
    'compute_target_size',
    'fallback_dehaze',
    'transform',
]
__version__ = '1.0.0'
