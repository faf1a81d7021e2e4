"""
Dehazing - AI Inference Module
===============================
Local, offline dehazing model execution using ONNX Runtime.
Only hardware-accelerated providers (CUDA, DirectML, CoreML, ROCm) count as
the accelerated strategy; a CPU-only runtime means the pipeline should use
the deterministic fallback transform instead.

Every initialization failure is reported as CapabilityUnavailable and every
execution failure as TransformError, so the pipeline can degrade gracefully.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import onnxruntime as ort

from core.errors import CapabilityUnavailable, TransformError
from core.transforms import PixelBuffer
from runtime.ai.model_registry import get_default_model, get_model

logger = logging.getLogger(__name__)

# Priority order: CUDA > DirectML > CoreML > ROCm
ACCELERATED_PROVIDERS = [
    'CUDAExecutionProvider',
    'DmlExecutionProvider',
    'CoreMLExecutionProvider',
    'ROCMExecutionProvider',
]
CPU_PROVIDER = 'CPUExecutionProvider'


class BackendDetector:
    """Detects and ranks available ONNX Runtime execution providers."""

    @staticmethod
    def get_available_providers() -> List[str]:
        """
        Query ONNX Runtime for available execution providers.

        Returns:
            Accelerated providers in priority order, CPU last when present.
        """
        available = ort.get_available_providers()

        providers = [p for p in ACCELERATED_PROVIDERS if p in available]
        if CPU_PROVIDER in available:
            providers.append(CPU_PROVIDER)

        return providers

    @staticmethod
    def select_accelerated_provider(candidates: Optional[List[str]] = None) -> str:
        """
        Select the best accelerated execution provider.

        Args:
            candidates: Restrict selection to these providers (auto if None)

        Raises:
            CapabilityUnavailable: if no accelerated provider is usable.
        """
        available = BackendDetector.get_available_providers()
        wanted = candidates if candidates is not None else ACCELERATED_PROVIDERS

        usable = [p for p in wanted if p in available and p != CPU_PROVIDER]
        if not usable:
            raise CapabilityUnavailable(
                f"No accelerated execution provider available (found: {', '.join(available) or 'none'})"
            )

        selected = usable[0]
        logger.info("[AI Backend] Selected: %s", selected)
        if len(usable) > 1:
            logger.debug("[AI Backend] Available fallbacks: %s", ', '.join(usable[1:]))

        return selected


class AcceleratedDehazer:
    """
    Dehazing model inference engine using ONNX Runtime.

    The model maps a (1, 3, H, W) float32 RGB tensor in [0, 1] to a tensor
    of the same shape. Alpha is carried over from the input untouched.
    """

    def __init__(self, model_path: str, provider: str):
        """
        Initialize the inference engine.

        Args:
            model_path: Path to ONNX model file (.onnx)
            provider: Execution provider to run on
        """
        self.model_path = Path(model_path)
        self.provider = provider

        if not self.model_path.exists():
            raise CapabilityUnavailable(f"Model file not found: {model_path}")

        self.session = self._load_model()
        self.input_name = self.session.get_inputs()[0].name

        logger.info("[AI Inference] Model loaded: %s on %s", self.model_path.name, self.provider)

    def _load_model(self) -> ort.InferenceSession:
        try:
            sess_options = ort.SessionOptions()
            sess_options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL

            session = ort.InferenceSession(
                str(self.model_path),
                sess_options=sess_options,
                providers=[self.provider]
            )
        except Exception as e:
            raise CapabilityUnavailable(f"Failed to load model: {e}", cause=e) from e

        # ORT silently falls back to CPU when a provider fails to register
        actual_provider = session.get_providers()[0]
        if actual_provider != self.provider:
            raise CapabilityUnavailable(
                f"Requested {self.provider} but session runs on {actual_provider}"
            )

        return session

    def close(self) -> None:
        """Release the inference session."""
        self.session = None

    def preprocess(self, rgb: np.ndarray) -> np.ndarray:
        """
        Args:
            rgb: Image as numpy array (H, W, 3) in [0, 255] uint8

        Returns:
            Tensor (1, 3, H, W) in [0, 1] float32
        """
        img_float = rgb.astype(np.float32) / 255.0
        img_chw = np.transpose(img_float, (2, 0, 1))
        return np.expand_dims(img_chw, axis=0)

    def postprocess(self, tensor: np.ndarray) -> np.ndarray:
        """
        Args:
            tensor: Output tensor (1, 3, H, W) in [0, 1] float32

        Returns:
            Image as numpy array (H, W, 3) in [0, 255] uint8
        """
        img_hwc = np.transpose(tensor[0], (1, 2, 0))
        return np.clip(np.rint(img_hwc * 255.0), 0, 255).astype(np.uint8)

    def process(self, buffer: PixelBuffer) -> PixelBuffer:
        """
        Dehaze a buffer with the loaded model.

        Raises:
            TransformError: on any inference failure or shape mismatch.
        """
        tensor = self.preprocess(buffer.data[..., :3])

        try:
            outputs = self.session.run(None, {self.input_name: tensor})
        except Exception as e:
            raise TransformError(f"Inference failed: {e}", cause=e) from e

        result = outputs[0]
        if result.shape != tensor.shape:
            raise TransformError(
                f"Model output shape {result.shape} does not match input {tensor.shape}"
            )

        output = np.empty_like(buffer.data)
        output[..., :3] = self.postprocess(result)
        output[..., 3] = buffer.data[..., 3]

        return PixelBuffer(width=buffer.width, height=buffer.height, data=output)


def resolve_model_path(
    model_key: Optional[str] = None,
    model_path: Optional[str] = None,
    models_dir: str = "models"
) -> Path:
    """Locate the ONNX file for an explicit path or a registry key."""
    if model_path:
        return Path(model_path)

    model = get_model(model_key) if model_key else get_default_model()
    if model is None:
        raise CapabilityUnavailable(f"Unknown model: {model_key}")

    return Path(models_dir) / model["filename"]


def load_accelerated_backend(config) -> AcceleratedDehazer:
    """
    Acquire an accelerated execution context for a pipeline configuration.

    Raises:
        CapabilityUnavailable: on any failure to acquire the context.
    """
    path = resolve_model_path(config.model_key, config.model_path, config.models_dir)
    provider = BackendDetector.select_accelerated_provider(config.providers)
    return AcceleratedDehazer(str(path), provider)


def get_device_info() -> Dict[str, object]:
    """Report which execution providers this machine offers."""
    providers = BackendDetector.get_available_providers()
    accelerated = [p for p in providers if p != CPU_PROVIDER]
    return {
        'providers': providers,
        'accelerated_available': bool(accelerated),
        'accelerated_provider': accelerated[0] if accelerated else None,
        'onnxruntime_version': ort.__version__,
    }
