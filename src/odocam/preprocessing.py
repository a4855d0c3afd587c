"""Image variants for odometer OCR.

Each photo is recognized several times: once as captured and once per
enhanced rendering. Glare and reflections on instrument clusters defeat
OCR in different ways on different renderings, so the variants are
treated as independent votes downstream.

Classes:
    PreprocessingMethod     - Enhancement method tags
    ImageVariant            - Rendered image + method
    ImageFilter             - Abstract best-effort renderer
    ColorControlsFilter     - Contrast/saturation/brightness adjustment
    GrayscaleSharpenFilter  - Grayscale + luminance sharpen
    DocumentEnhanceFilter   - Unsharp mask + exposure + high contrast (LCDs)
    AdaptiveBinarizeFilter  - Push mid-greys to black/white (mixed lighting)
    PreprocessingPlanner    - Decides which variants to render, in order
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np

from odocam.inference import BoundingBox

log = logging.getLogger(__name__)

# Glare suppression constants, tuned on digital and mechanical displays
CONTRAST_BOOST = 1.3
SATURATION_LEVEL = 0.2
BRIGHTNESS_LIFT = 0.05

SHARPEN_AMOUNT = 0.7
UNSHARP_RADIUS = 2.5
UNSHARP_INTENSITY = 0.5
DOCUMENT_EXPOSURE_EV = 0.3
DOCUMENT_CONTRAST = 1.2
BINARIZE_CONTRAST = 3.0
BINARIZE_GAIN = 1.5
BINARIZE_BIAS = -0.3

# Rec. 709 luma weights, BGR order
_LUMA_BGR = np.array([0.0722, 0.7152, 0.2126], dtype=np.float32)


class PreprocessingMethod(Enum):
    IDENTITY = "identity"
    CONTRAST_ENHANCED = "contrast"
    GRAYSCALE_SHARPENED = "sharpened"
    DOCUMENT_ENHANCED = "document"
    ADAPTIVE_BINARIZED = "binarized"


@dataclass(frozen=True)
class ImageVariant:
    """One rendering of the source photo, consumed once by the recognizer."""

    image: np.ndarray
    method: PreprocessingMethod


# ---------------------------------------------------------------------------
# Pixel helpers (float32 BGR in [0, 1])
# ---------------------------------------------------------------------------


def _to_float(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    return image.astype(np.float32) / 255.0


def _to_uint8(image: np.ndarray) -> np.ndarray:
    return (np.clip(image, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)


def _luma(image: np.ndarray) -> np.ndarray:
    return image @ _LUMA_BGR


def _color_controls(
    image: np.ndarray,
    contrast: float = 1.0,
    saturation: float = 1.0,
    brightness: float = 0.0,
) -> np.ndarray:
    """Saturation blend toward luma, brightness offset, contrast around mid-grey."""
    luma = _luma(image)[..., np.newaxis]
    out = luma + saturation * (image - luma)
    out = out + brightness
    return (out - 0.5) * contrast + 0.5


def _grayscale(image: np.ndarray) -> np.ndarray:
    luma = _luma(image)
    return np.repeat(luma[..., np.newaxis], 3, axis=2)


def _unsharp(image: np.ndarray, sigma: float, amount: float) -> np.ndarray:
    blurred = cv2.GaussianBlur(image, (0, 0), sigmaX=sigma)
    return image + amount * (image - blurred)


def crop_region(image: np.ndarray, region: BoundingBox) -> np.ndarray:
    """Crop to a normalized region, clamped to the image.

    Returns the full image when the clamped region is empty.
    """
    h, w = image.shape[:2]
    x1, y1, x2, y2 = region.to_pixel_rect(w, h)
    if x2 <= x1 or y2 <= y1:
        log.debug("Region %s does not intersect %dx%d image; using full frame", region, w, h)
        return image
    return image[y1:y2, x1:x2]


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class ImageFilter(ABC):
    """Best-effort renderer for one preprocessing method."""

    method: PreprocessingMethod

    def apply(self, image: np.ndarray) -> Optional[np.ndarray]:
        """Render the variant, or None if OpenCV could not build it."""
        try:
            return _to_uint8(self._render(_to_float(image)))
        except cv2.error as e:
            log.warning("%s filter failed: %s", self.method.value, e)
            return None

    @abstractmethod
    def _render(self, image: np.ndarray) -> np.ndarray:
        """Transform a float32 BGR image in [0, 1]."""
        ...


class ColorControlsFilter(ImageFilter):
    """Boost contrast, drain colour noise and lift brightness slightly."""

    method = PreprocessingMethod.CONTRAST_ENHANCED

    def __init__(
        self,
        contrast: float = CONTRAST_BOOST,
        saturation: float = SATURATION_LEVEL,
        brightness: float = BRIGHTNESS_LIFT,
    ):
        self.contrast = contrast
        self.saturation = saturation
        self.brightness = brightness

    def _render(self, image: np.ndarray) -> np.ndarray:
        return _color_controls(
            image,
            contrast=self.contrast,
            saturation=self.saturation,
            brightness=self.brightness,
        )


class GrayscaleSharpenFilter(ImageFilter):
    method = PreprocessingMethod.GRAYSCALE_SHARPENED

    def __init__(self, amount: float = SHARPEN_AMOUNT):
        self.amount = amount

    def _render(self, image: np.ndarray) -> np.ndarray:
        return _unsharp(_grayscale(image), sigma=1.0, amount=self.amount)


class DocumentEnhanceFilter(ImageFilter):
    """Edge enhancement plus exposure for backlit LCD displays."""

    method = PreprocessingMethod.DOCUMENT_ENHANCED

    def _render(self, image: np.ndarray) -> np.ndarray:
        sharpened = _unsharp(image, sigma=UNSHARP_RADIUS, amount=UNSHARP_INTENSITY)
        exposed = sharpened * (2.0**DOCUMENT_EXPOSURE_EV)
        return _color_controls(exposed, contrast=DOCUMENT_CONTRAST, saturation=0.0)


class AdaptiveBinarizeFilter(ImageFilter):
    """Near-binary rendering for LCD and mechanical displays in mixed light."""

    method = PreprocessingMethod.ADAPTIVE_BINARIZED

    def _render(self, image: np.ndarray) -> np.ndarray:
        high_contrast = _color_controls(_grayscale(image), contrast=BINARIZE_CONTRAST)
        return high_contrast * BINARIZE_GAIN + BINARIZE_BIAS


def default_filters() -> Dict[PreprocessingMethod, ImageFilter]:
    filters: List[ImageFilter] = [
        ColorControlsFilter(),
        GrayscaleSharpenFilter(),
        DocumentEnhanceFilter(),
        AdaptiveBinarizeFilter(),
    ]
    return {f.method: f for f in filters}


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


DEFAULT_METHODS = (PreprocessingMethod.IDENTITY, PreprocessingMethod.CONTRAST_ENHANCED)


class PreprocessingPlanner:
    """
    Decides which image variants to hand to the recognizer.

    The identity variant is always first. Enhanced variants follow in the
    order of ``methods``; a variant whose filter returns None is left out.
    Order matters only for logging, every variant is weighted equally
    downstream.
    """

    def __init__(
        self,
        methods: Sequence[PreprocessingMethod] = DEFAULT_METHODS,
        filters: Optional[Dict[PreprocessingMethod, ImageFilter]] = None,
    ):
        """
        Args:
            methods: Methods to render (IDENTITY is implied and always first)
            filters: Renderer per method (defaults to the OpenCV filters)
        """
        self.methods = [m for m in methods if m is not PreprocessingMethod.IDENTITY]
        self.filters = filters if filters is not None else default_filters()

        missing = [m.value for m in self.methods if m not in self.filters]
        if missing:
            raise ValueError(f"No filter registered for: {', '.join(missing)}")

    def plan(self, image: np.ndarray) -> List[ImageVariant]:
        variants = [ImageVariant(image=image, method=PreprocessingMethod.IDENTITY)]

        for method in self.methods:
            rendered = self.filters[method].apply(image)
            if rendered is None:
                log.debug("Skipping %s variant", method.value)
                continue
            variants.append(ImageVariant(image=rendered, method=method))

        log.debug("Planned variants: %s", [v.method.value for v in variants])
        return variants
