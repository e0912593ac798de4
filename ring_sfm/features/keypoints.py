"""
Keypoint detection and descriptor extraction.

A SIFT-style detector: extrema of a difference-of-Gaussians scale space,
refined to sub-pixel accuracy, filtered for contrast and edge response,
assigned dominant orientations, and described by a 4x4x8 histogram of
gradient orientations (128 dimensions).
"""

from __future__ import annotations

import logging
import math
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np
from scipy import ndimage

from ring_sfm.sfm.config import ExtractorConfig
from ring_sfm.sfm.data_structures import FeatureSet, Image, Keypoint
from ring_sfm.sfm.errors import ExtractionError

logger = logging.getLogger(__name__)

DESCRIPTOR_SIZE = 128

# Blur assumed to be already present in the input image.
_INITIAL_SIGMA = 0.5
_BORDER = 5
_MAX_INTERP_STEPS = 5
_ORI_BINS = 36
_ORI_PEAK_RATIO = 0.8
_DESC_WIDTH = 4
_DESC_BINS = 8
_DESC_MAG_CLIP = 0.2


def _to_gray_float(pixels: np.ndarray) -> np.ndarray:
    """Convert an RGB or greyscale array into float32 intensities in [0, 1]."""
    src = pixels
    if src.dtype not in (np.uint8, np.float32):
        src = src.astype(np.float32)
    if src.ndim == 3:
        gray = cv2.cvtColor(np.ascontiguousarray(src), cv2.COLOR_RGB2GRAY)
    else:
        gray = src
    gray = gray.astype(np.float32)
    if pixels.dtype == np.uint8:
        gray /= 255.0
    return gray


def _sample_colors(pixels: np.ndarray, pts: np.ndarray) -> np.ndarray:
    """Nearest-pixel RGB colors in [0, 1] at (N, 2) pixel positions."""
    if len(pts) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    h, w = pixels.shape[:2]
    cols = np.clip(np.round(pts[:, 0]).astype(int), 0, w - 1)
    rows = np.clip(np.round(pts[:, 1]).astype(int), 0, h - 1)
    samples = pixels[rows, cols].astype(np.float64)
    if pixels.dtype == np.uint8:
        samples /= 255.0
    if samples.ndim == 1:
        samples = np.repeat(samples[:, None], 3, axis=1)
    return np.clip(samples, 0.0, 1.0)


def _usable_octaves(height: int, width: int, config: ExtractorConfig) -> int:
    # The smallest octave must still be at least one minimum patch wide.
    by_size = int(math.floor(math.log2(min(height, width) / config.min_image_size))) + 1
    return max(1, min(config.num_octaves, by_size))


def build_gaussian_pyramid(
    gray: np.ndarray,
    num_octaves: int,
    scales_per_octave: int,
    sigma: float,
) -> List[np.ndarray]:
    """
    Build a Gaussian scale space.

    Returns:
        One (scales_per_octave + 3, H_o, W_o) float32 stack per octave.
    """
    k = 2.0 ** (1.0 / scales_per_octave)
    n_levels = scales_per_octave + 3

    # Incremental blur needed to go from level i-1 to level i.
    increments = [0.0]
    for i in range(1, n_levels):
        prev = sigma * k ** (i - 1)
        increments.append(math.sqrt((prev * k) ** 2 - prev ** 2))

    base_sigma = math.sqrt(max(sigma ** 2 - _INITIAL_SIGMA ** 2, 0.01))
    base = cv2.GaussianBlur(gray, (0, 0), sigmaX=base_sigma, sigmaY=base_sigma)

    pyramid = []
    for _ in range(num_octaves):
        levels = [base]
        for i in range(1, n_levels):
            levels.append(
                cv2.GaussianBlur(levels[-1], (0, 0), sigmaX=increments[i], sigmaY=increments[i])
            )
        pyramid.append(np.stack(levels))
        # Level `scales_per_octave` has twice the base blur.
        base = np.ascontiguousarray(levels[scales_per_octave][::2, ::2])
    return pyramid


def _find_extrema(dog: np.ndarray, threshold: float) -> np.ndarray:
    """Candidate (scale, row, col) indices of 3x3x3 extrema above threshold."""
    max_f = ndimage.maximum_filter(dog, size=3, mode="nearest")
    min_f = ndimage.minimum_filter(dog, size=3, mode="nearest")
    mask = ((dog == max_f) & (dog > threshold)) | ((dog == min_f) & (dog < -threshold))
    mask[0] = False
    mask[-1] = False
    mask[:, :_BORDER, :] = False
    mask[:, -_BORDER:, :] = False
    mask[:, :, :_BORDER] = False
    mask[:, :, -_BORDER:] = False
    return np.argwhere(mask)


def _localize_extremum(
    dog: np.ndarray,
    sc: int,
    y: int,
    x: int,
    config: ExtractorConfig,
) -> Optional[Tuple[int, int, int, np.ndarray, float]]:
    """
    Refine an extremum with a quadratic fit; reject low-contrast and edge points.

    Returns:
        (scale index, row, col, sub-pixel offset [dx, dy, ds], contrast) or None.
    """
    n_scales, h, w = dog.shape
    for _ in range(_MAX_INTERP_STEPS):
        cube = dog[sc - 1 : sc + 2, y - 1 : y + 2, x - 1 : x + 2].astype(np.float64)
        center = cube[1, 1, 1]
        grad = 0.5 * np.array(
            [
                cube[1, 1, 2] - cube[1, 1, 0],
                cube[1, 2, 1] - cube[1, 0, 1],
                cube[2, 1, 1] - cube[0, 1, 1],
            ]
        )
        dxx = cube[1, 1, 2] - 2 * center + cube[1, 1, 0]
        dyy = cube[1, 2, 1] - 2 * center + cube[1, 0, 1]
        dss = cube[2, 1, 1] - 2 * center + cube[0, 1, 1]
        dxy = 0.25 * (cube[1, 2, 2] - cube[1, 2, 0] - cube[1, 0, 2] + cube[1, 0, 0])
        dxs = 0.25 * (cube[2, 1, 2] - cube[2, 1, 0] - cube[0, 1, 2] + cube[0, 1, 0])
        dys = 0.25 * (cube[2, 2, 1] - cube[2, 0, 1] - cube[0, 2, 1] + cube[0, 0, 1])
        hessian = np.array([[dxx, dxy, dxs], [dxy, dyy, dys], [dxs, dys, dss]])

        try:
            offset = -np.linalg.solve(hessian, grad)
        except np.linalg.LinAlgError:
            return None
        if not np.all(np.isfinite(offset)):
            return None
        if np.all(np.abs(offset) < 0.5):
            break

        x += int(round(offset[0]))
        y += int(round(offset[1]))
        sc += int(round(offset[2]))
        if (
            sc < 1
            or sc > n_scales - 2
            or y < _BORDER
            or y >= h - _BORDER
            or x < _BORDER
            or x >= w - _BORDER
        ):
            return None
    else:
        return None

    contrast = center + 0.5 * float(grad @ offset)
    if abs(contrast) * config.scales_per_octave < config.contrast_threshold:
        return None

    # Principal curvature ratio test on the 2x2 spatial Hessian.
    trace = dxx + dyy
    det = dxx * dyy - dxy * dxy
    r = config.edge_threshold
    if det <= 0 or trace * trace * r >= (r + 1) ** 2 * det:
        return None

    return sc, y, x, offset, contrast


def _gradients(img: np.ndarray, rows: np.ndarray, cols: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    dx = img[rows, cols + 1] - img[rows, cols - 1]
    dy = img[rows + 1, cols] - img[rows - 1, cols]
    return dx, dy


def _dominant_orientations(img: np.ndarray, x: float, y: float, sigma_oct: float) -> List[float]:
    """Orientation histogram peaks around (x, y) in an octave image."""
    h, w = img.shape
    weight_sigma = 1.5 * sigma_oct
    radius = int(round(3 * weight_sigma))
    xi, yi = int(round(x)), int(round(y))

    y0, y1 = max(yi - radius, 1), min(yi + radius, h - 2)
    x0, x1 = max(xi - radius, 1), min(xi + radius, w - 2)
    if y0 > y1 or x0 > x1:
        return [0.0]

    rows, cols = np.mgrid[y0 : y1 + 1, x0 : x1 + 1]
    dx, dy = _gradients(img, rows, cols)
    magnitude = np.hypot(dx, dy)
    angle = np.mod(np.arctan2(dy, dx), 2 * np.pi)
    weight = np.exp(-((cols - xi) ** 2 + (rows - yi) ** 2) / (2 * weight_sigma ** 2))

    bins = np.floor(angle * _ORI_BINS / (2 * np.pi)).astype(int) % _ORI_BINS
    hist = np.bincount(bins.ravel(), weights=(weight * magnitude).ravel(), minlength=_ORI_BINS)
    hist = (
        6 * hist
        + 4 * (np.roll(hist, 1) + np.roll(hist, -1))
        + np.roll(hist, 2)
        + np.roll(hist, -2)
    ) / 16.0

    peak = hist.max()
    if peak <= 0:
        return [0.0]

    orientations = []
    left = np.roll(hist, 1)
    right = np.roll(hist, -1)
    for i in range(_ORI_BINS):
        c = hist[i]
        if c < _ORI_PEAK_RATIO * peak or c <= left[i] or c <= right[i]:
            continue
        denom = left[i] - 2 * c + right[i]
        shift = 0.5 * (left[i] - right[i]) / denom if denom != 0 else 0.0
        theta = (i + 0.5 + shift) * 2 * np.pi / _ORI_BINS
        orientations.append(float(np.mod(theta, 2 * np.pi)))
    return orientations or [0.0]


def _compute_descriptor(
    img: np.ndarray,
    x: float,
    y: float,
    sigma_oct: float,
    angle: float,
) -> np.ndarray:
    """4x4 spatial cells x 8 orientation bins, trilinearly interpolated."""
    h, w = img.shape
    d, n = _DESC_WIDTH, _DESC_BINS
    hist_width = 3.0 * sigma_oct
    radius = int(round(hist_width * math.sqrt(2) * (d + 1) * 0.5))
    radius = min(radius, int(math.hypot(h, w)))
    cos_t, sin_t = math.cos(angle), math.sin(angle)
    xi, yi = int(round(x)), int(round(y))

    di, dj = np.mgrid[-radius : radius + 1, -radius : radius + 1]
    rows = yi + di
    cols = xi + dj
    inside = (rows >= 1) & (rows < h - 1) & (cols >= 1) & (cols < w - 1)

    # Sample offsets in the keypoint frame, measured in histogram cells.
    c_rot = (dj * cos_t + di * sin_t) / hist_width
    r_rot = (-dj * sin_t + di * cos_t) / hist_width
    rbin = r_rot + d / 2 - 0.5
    cbin = c_rot + d / 2 - 0.5
    keep = inside & (rbin > -1) & (rbin < d) & (cbin > -1) & (cbin < d)
    if not np.any(keep):
        return np.zeros(d * d * n, dtype=np.float32)

    rows, cols = rows[keep], cols[keep]
    rbin, cbin = rbin[keep], cbin[keep]
    dx, dy = _gradients(img, rows, cols)
    weight = np.exp(-(c_rot[keep] ** 2 + r_rot[keep] ** 2) / (2 * (0.5 * d) ** 2))
    magnitude = np.hypot(dx, dy) * weight
    obin = np.mod(np.arctan2(dy, dx) - angle, 2 * np.pi) * n / (2 * np.pi)

    r0 = np.floor(rbin).astype(int)
    c0 = np.floor(cbin).astype(int)
    o0 = np.floor(obin).astype(int)
    fr, fc, fo = rbin - r0, cbin - c0, obin - o0

    hist = np.zeros((d + 2, d + 2, n), dtype=np.float64)
    for dr, wr in ((0, 1 - fr), (1, fr)):
        for dc, wc in ((0, 1 - fc), (1, fc)):
            for do, wo in ((0, 1 - fo), (1, fo)):
                np.add.at(
                    hist,
                    (r0 + 1 + dr, c0 + 1 + dc, (o0 + do) % n),
                    magnitude * wr * wc * wo,
                )

    desc = hist[1:-1, 1:-1, :].ravel()
    norm = np.linalg.norm(desc)
    if norm == 0:
        return desc.astype(np.float32)
    desc = np.minimum(desc / norm, _DESC_MAG_CLIP)
    desc /= max(np.linalg.norm(desc), 1e-12)
    return desc.astype(np.float32)


class SiftExtractor:
    """
    Difference-of-Gaussians keypoint detector with SIFT-style descriptors.

    Deterministic for a fixed image and configuration.
    """

    descriptor_size = DESCRIPTOR_SIZE

    def __init__(self, config: Optional[ExtractorConfig] = None) -> None:
        self.config = config or ExtractorConfig()

    def extract(self, image: Union[Image, np.ndarray]) -> FeatureSet:
        """
        Detect keypoints and compute descriptors in an image.

        Args:
            image: Image, or a raw (H, W) / (H, W, 3) array.

        Returns:
            FeatureSet with keypoints, (N, 128) float32 descriptors and
            per-keypoint colors.

        Raises:
            ExtractionError: If the image is smaller than the minimum patch
                size or has an unsupported shape.
        """
        pixels = image.pixels if isinstance(image, Image) else np.asarray(image)
        if pixels.ndim not in (2, 3) or (pixels.ndim == 3 and pixels.shape[2] != 3):
            raise ExtractionError(f"Unsupported image shape {pixels.shape}")
        height, width = pixels.shape[:2]
        cfg = self.config
        if width < cfg.min_image_size or height < cfg.min_image_size:
            raise ExtractionError(
                f"Image of {width}x{height} is smaller than the minimum "
                f"patch size {cfg.min_image_size}px"
            )

        gray = _to_gray_float(pixels)
        n_octaves = _usable_octaves(height, width, cfg)
        pyramid = build_gaussian_pyramid(gray, n_octaves, cfg.scales_per_octave, cfg.sigma)

        prefilter = 0.5 * cfg.contrast_threshold / cfg.scales_per_octave
        detections = []
        for octave, gauss in enumerate(pyramid):
            dog = gauss[1:] - gauss[:-1]
            for sc, y, x in _find_extrema(dog, prefilter):
                localized = _localize_extremum(dog, int(sc), int(y), int(x), cfg)
                if localized is None:
                    continue
                sc_i, y_i, x_i, offset, contrast = localized
                x_oct = x_i + offset[0]
                y_oct = y_i + offset[1]
                sigma_oct = cfg.sigma * 2.0 ** ((sc_i + offset[2]) / cfg.scales_per_octave)
                img = gauss[sc_i]
                for angle in _dominant_orientations(img, x_oct, y_oct, sigma_oct):
                    detections.append(
                        (abs(contrast), octave, y_oct, x_oct, sigma_oct, angle, sc_i, contrast)
                    )

        # Strongest first; position breaks ties so the order is reproducible.
        detections.sort(key=lambda d: (-d[0], d[1], d[2], d[3], d[5]))
        if cfg.max_keypoints is not None:
            detections = detections[: cfg.max_keypoints]

        keypoints: List[Keypoint] = []
        descriptors = np.zeros((len(detections), DESCRIPTOR_SIZE), dtype=np.float32)
        for i, (_, octave, y_oct, x_oct, sigma_oct, angle, sc_i, contrast) in enumerate(detections):
            scale = 2.0 ** octave
            keypoints.append(
                Keypoint(
                    x=float(x_oct * scale),
                    y=float(y_oct * scale),
                    scale=float(sigma_oct * scale),
                    orientation=angle,
                    response=float(contrast),
                    octave=octave,
                )
            )
            descriptors[i] = _compute_descriptor(
                pyramid[octave][sc_i], x_oct, y_oct, sigma_oct, angle
            )

        features = FeatureSet(keypoints=keypoints, descriptors=descriptors, colors=np.zeros((0, 3)))
        features.colors = _sample_colors(pixels, features.points())
        logger.debug(
            "Extracted %d keypoints from %dx%d image over %d octaves",
            len(keypoints),
            width,
            height,
            n_octaves,
        )
        return features


def detect_keypoints(
    image: Union[Image, np.ndarray],
    config: Optional[ExtractorConfig] = None,
) -> Tuple[List[Keypoint], np.ndarray]:
    """
    Detect keypoints and compute descriptors in an image.

    Args:
        image: Input image (H, W, 3) or (H, W), uint8 or float in [0, 1].
        config: Extractor settings (defaults to ExtractorConfig()).

    Returns:
        Tuple of (keypoints, descriptors) where:
        - keypoints: List of Keypoint objects.
        - descriptors: Array of descriptors (N, 128), dtype=float32.
    """
    features = SiftExtractor(config).extract(image)
    return features.keypoints, features.descriptors


__all__ = ["SiftExtractor", "detect_keypoints", "build_gaussian_pyramid", "DESCRIPTOR_SIZE"]
