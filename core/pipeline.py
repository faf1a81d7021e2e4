"""
Dehazing - Pipeline Orchestrator
=================================
Staged, cancel-safe single image dehazing.

    Idle → Initializing → Decoding → Resizing → Transforming → Encoding → Complete
                       (any non-terminal stage) → Failed

The processing strategy is resolved once per pipeline instance:
1. Accelerated: ONNX model on a hardware execution provider
2. Fallback: deterministic pixel transform (core.transforms)

An accelerated transform failure downgrades the instance to fallback and
retries the transform once. Every other failure aborts the run.
"""

import asyncio
import io
import logging
import mimetypes
import os
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageOps

from core.capability import (
    BackendProbe,
    CapabilityResolver,
    DowngradeCallback,
    StrategyDowngrade,
)
from core.errors import (
    DecodeError,
    DehazingError,
    EncodeError,
    PipelineBusy,
    RunCancelled,
    TransformError,
)
from core.progress import (
    STAGE_COMPLETE,
    STAGE_FINALIZING,
    STAGE_LOADING,
    STAGE_PROCESSING,
    STAGE_TRANSFORMING,
    ProgressCallback,
    ProgressTracker,
)
from core.resize_policy import MAX_IMAGE_DIMENSION, compute_target_size
from core.transforms import PixelBuffer, ProcessingStrategy, transform

logger = logging.getLogger(__name__)

OUTPUT_MEDIA_TYPE = "image/png"
OUTPUT_QUALITY = 0.95


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class PipelineConfig:
    """Configuration for the dehazing pipeline."""

    def __init__(self):
        # Resize policy
        self.max_dimension: int = MAX_IMAGE_DIMENSION

        # Encoder (PNG ignores quality, kept for API compatibility)
        self.output_quality: float = OUTPUT_QUALITY

        # Accelerated backend
        self.use_accelerated: bool = True
        self.model_key: Optional[str] = None
        self.model_path: Optional[str] = None
        self.models_dir: str = "models"
        self.providers: Optional[List[str]] = None
        self.init_timeout: float = 30.0

        # Fallback transform parallelism (row bands)
        self.transform_workers: int = 1

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "PipelineConfig":
        """Build a configuration from DEHAZE_* environment variables."""
        env = os.environ if environ is None else environ
        config = cls()

        if "DEHAZE_MAX_DIMENSION" in env:
            config.max_dimension = int(env["DEHAZE_MAX_DIMENSION"])
        if "DEHAZE_MODEL_KEY" in env:
            config.model_key = env["DEHAZE_MODEL_KEY"]
        if "DEHAZE_MODEL_PATH" in env:
            config.model_path = env["DEHAZE_MODEL_PATH"]
        if "DEHAZE_MODELS_DIR" in env:
            config.models_dir = env["DEHAZE_MODELS_DIR"]
        if "DEHAZE_INIT_TIMEOUT" in env:
            config.init_timeout = float(env["DEHAZE_INIT_TIMEOUT"])
        if "DEHAZE_USE_ACCELERATED" in env:
            config.use_accelerated = _env_flag(env["DEHAZE_USE_ACCELERATED"])
        if "DEHAZE_WORKERS" in env:
            config.transform_workers = int(env["DEHAZE_WORKERS"])

        config.validate()
        return config

    def validate(self) -> None:
        if self.max_dimension < 1:
            raise ValueError(f"max_dimension must be >= 1, got {self.max_dimension}")
        if not 0.0 <= self.output_quality <= 1.0:
            raise ValueError(f"output_quality must be within [0, 1], got {self.output_quality}")
        if self.init_timeout <= 0:
            raise ValueError(f"init_timeout must be positive, got {self.init_timeout}")
        if self.transform_workers < 1:
            raise ValueError(f"transform_workers must be >= 1, got {self.transform_workers}")

    def as_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return {
            'max_dimension': self.max_dimension,
            'output_quality': self.output_quality,
            'use_accelerated': self.use_accelerated,
            'model_key': self.model_key,
            'model_path': self.model_path,
            'models_dir': self.models_dir,
            'providers': self.providers,
            'init_timeout': self.init_timeout,
            'transform_workers': self.transform_workers,
        }


class PipelineState(str, Enum):
    """Pipeline run states."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    DECODING = "decoding"
    RESIZING = "resizing"
    TRANSFORMING = "transforming"
    ENCODING = "encoding"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class SourceImage:
    """Encoded input image borrowed by the pipeline for one run."""
    data: bytes
    media_type: str = "application/octet-stream"

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path) -> "SourceImage":
        path = Path(path)
        media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(data=path.read_bytes(), media_type=media_type)


@dataclass
class ResultArtifact:
    """Encoded output of a successful run."""
    data: bytes
    width: int
    height: int
    strategy: ProcessingStrategy
    resized: bool = False
    media_type: str = OUTPUT_MEDIA_TYPE

    @property
    def size(self) -> int:
        return len(self.data)


class CancellationToken:
    """Cooperative cancellation, honoured between pipeline stages."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ==============================================================================
# Stage Helpers
# ==============================================================================

def decode_image(data: bytes) -> Image.Image:
    """
    Decode encoded image bytes into a fully loaded PIL image.

    Raises:
        DecodeError: if the bytes are empty or not a supported image.
    """
    if not data:
        raise DecodeError("Failed to load image: no data")

    try:
        image = Image.open(io.BytesIO(data))
    except Exception as e:
        raise DecodeError(f"Failed to load image: {e}", cause=e) from e

    try:
        image.load()
    except Exception as e:
        image.close()
        raise DecodeError(f"Failed to load image: {e}", cause=e) from e

    # Match what a browser draws: EXIF orientation applied before sizing
    try:
        oriented = ImageOps.exif_transpose(image)
    except Exception as e:
        raise DecodeError(f"Failed to apply image orientation: {e}", cause=e) from e
    finally:
        image.close()

    return oriented


HIGH_BIT_DEPTH_MODES = ('I;16', 'I;16L', 'I;16B', 'I;16N', 'I')


def to_8bit(image: Image.Image) -> Image.Image:
    """
    Scale a 16-bit grayscale raster to 8-bit 'L'.

    Pillow clips these modes when converting, which turns mid-grey white.
    """
    samples = np.asarray(image).astype(np.int64)
    return Image.fromarray(np.clip(samples >> 8, 0, 255).astype(np.uint8))


def rasterize(image: Image.Image, max_dimension: int) -> Tuple[PixelBuffer, bool]:
    """
    Draw an image into an RGBA buffer bounded by the resize policy.

    Returns:
        (buffer, resized)
    """
    target = compute_target_size(image.width, image.height, max_dimension)
    resized = target != (image.width, image.height)

    surfaces = []
    try:
        surface = image
        if surface.mode in HIGH_BIT_DEPTH_MODES:
            surface = to_8bit(surface)
            surfaces.append(surface)
        if surface.mode != 'RGBA':
            surface = surface.convert('RGBA')
            surfaces.append(surface)
        if resized:
            surface = surface.resize(target, Image.BICUBIC)
            surfaces.append(surface)
        return PixelBuffer.from_image(surface), resized
    finally:
        for s in surfaces:
            s.close()


def encode_png(buffer: PixelBuffer, quality: float = OUTPUT_QUALITY) -> bytes:
    """
    Encode a buffer as PNG.

    ``quality`` is accepted for encoder compatibility; PNG is lossless.
    """
    if not 0.0 <= quality <= 1.0:
        raise EncodeError(f"Invalid encoder quality: {quality}")

    try:
        with buffer.to_image() as image:
            output = io.BytesIO()
            image.save(output, format='PNG')
    except Exception as e:
        raise EncodeError(f"Failed to create result image: {e}", cause=e) from e

    data = output.getvalue()
    if not data:
        raise EncodeError("Failed to create result image: encoder produced no data")
    return data


def default_backend_probe(config: PipelineConfig) -> BackendProbe:
    """Probe that loads the ONNX model described by a configuration."""

    def probe():
        # Lazy import keeps onnxruntime off the import path of core
        from runtime.ai.ai_inference import load_accelerated_backend
        return load_accelerated_backend(config)

    return probe


_DEFAULT_PROBE = object()


class DehazingPipeline:
    """
    Single image dehazing pipeline.

    The instance owns its strategy resolution state; construct one per
    independent consumer. Only one run may be in flight at a time, a
    concurrent call fails fast with PipelineBusy.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        probe=_DEFAULT_PROBE,
        on_downgrade: Optional[DowngradeCallback] = None
    ):
        """
        Initialize pipeline with configuration.

        Args:
            config: Pipeline configuration (defaults if None)
            probe: Callable acquiring the accelerated backend; the ONNX loader
                by default, None to always use the fallback transform
            on_downgrade: Called whenever the instance falls back
        """
        self.config = config or PipelineConfig()
        self.config.validate()

        if probe is _DEFAULT_PROBE:
            probe = default_backend_probe(self.config)
        if not self.config.use_accelerated:
            probe = None

        self.resolver = CapabilityResolver(
            probe,
            timeout=self.config.init_timeout,
            on_downgrade=on_downgrade
        )
        self.state = PipelineState.IDLE
        self._run_lock = threading.Lock()

    @property
    def strategy(self) -> Optional[ProcessingStrategy]:
        return self.resolver.strategy

    @property
    def downgrades(self) -> List[StrategyDowngrade]:
        return self.resolver.downgrades

    @property
    def busy(self) -> bool:
        return self._run_lock.locked()

    def _enter(self, state: PipelineState) -> None:
        logger.debug("[Pipeline] %s → %s", self.state.value, state.value)
        self.state = state

    def _checkpoint(self, token: Optional[CancellationToken]) -> None:
        if token is not None and token.cancelled:
            raise RunCancelled("Run cancelled")

    async def initialize(self, on_progress: Optional[ProgressCallback] = None) -> ProcessingStrategy:
        """Resolve the processing strategy ahead of the first run."""
        tracker = ProgressTracker(on_progress)
        tracker.emit(*STAGE_LOADING)
        return await self.resolver.resolve(on_status=tracker.status)

    async def run(
        self,
        source: SourceImage,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ResultArtifact:
        """
        Dehaze one image.

        Args:
            source: Encoded input image
            on_progress: Called synchronously with each ProgressEvent
            cancel_token: Checked between stages

        Returns:
            PNG encoded ResultArtifact

        Raises:
            PipelineBusy: another run is in flight on this instance
            DehazingError: any fatal failure, tagged with the failing stage
        """
        if not self._run_lock.acquire(blocking=False):
            raise PipelineBusy("A run is already in progress", stage=self.state.value)

        tracker = ProgressTracker(on_progress)
        buffer: Optional[PixelBuffer] = None
        output: Optional[PixelBuffer] = None

        try:
            # Initializing
            self._enter(PipelineState.INITIALIZING)
            tracker.emit(*STAGE_LOADING)
            await self.resolver.resolve(on_status=tracker.status)
            self._checkpoint(cancel_token)

            # Decoding
            self._enter(PipelineState.DECODING)
            image = await asyncio.to_thread(decode_image, source.data)
            try:
                self._checkpoint(cancel_token)

                # Resizing
                self._enter(PipelineState.RESIZING)
                tracker.emit(*STAGE_PROCESSING)
                buffer, resized = rasterize(image, self.config.max_dimension)
            finally:
                image.close()
            self._checkpoint(cancel_token)

            # Transforming
            self._enter(PipelineState.TRANSFORMING)
            tracker.emit(*STAGE_TRANSFORMING)
            output, strategy = await self._transform(buffer)
            buffer = None
            self._checkpoint(cancel_token)

            # Encoding
            self._enter(PipelineState.ENCODING)
            tracker.emit(*STAGE_FINALIZING)
            data = await asyncio.to_thread(encode_png, output, self.config.output_quality)

            artifact = ResultArtifact(
                data=data,
                width=output.width,
                height=output.height,
                strategy=strategy,
                resized=resized
            )

            self._enter(PipelineState.COMPLETE)
            tracker.emit(*STAGE_COMPLETE)
            logger.info(
                "[Pipeline] Complete: %d×%d via %s (%d bytes)",
                artifact.width, artifact.height, strategy.value, artifact.size
            )
            return artifact

        except DehazingError as e:
            if e.stage is None:
                e.stage = self.state.value
            self._fail(e)
            raise
        except Exception as e:
            error = DehazingError(f"{type(e).__name__}: {e}", stage=self.state.value, cause=e)
            self._fail(error)
            raise error from e
        finally:
            if self.state != PipelineState.COMPLETE:
                self.state = PipelineState.FAILED
            buffer = None
            output = None
            self._run_lock.release()

    def run_sync(
        self,
        source: SourceImage,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ResultArtifact:
        """Drive ``run`` to completion from synchronous code."""
        return asyncio.run(self.run(source, on_progress, cancel_token))

    async def _transform(self, buffer: PixelBuffer) -> Tuple[PixelBuffer, ProcessingStrategy]:
        strategy = self.resolver.strategy
        workers = self.config.transform_workers

        try:
            result = await asyncio.to_thread(
                transform, buffer, strategy, self.resolver.backend, workers
            )
            return result, strategy
        except TransformError as e:
            if strategy != ProcessingStrategy.ACCELERATED:
                raise
            self.resolver.downgrade(str(e), stage=PipelineState.TRANSFORMING.value, error=e)

        result = await asyncio.to_thread(
            transform, buffer, ProcessingStrategy.FALLBACK, None, workers
        )
        return result, ProcessingStrategy.FALLBACK

    def _fail(self, error: DehazingError) -> None:
        self.state = PipelineState.FAILED
        logger.error("[Pipeline] Failed: %s", error)
