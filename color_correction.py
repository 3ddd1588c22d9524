"""
Colour correction by inverting the attenuation model.

Given attenuation coefficients and the veiling light, every channel is
corrected as
    J_c = (I_c - V_c * (1 - exp(-beta_B_c * z))) / exp(-beta_D_c * z)
either with one distance z for the whole frame, or with a per-pixel distance
field interpolated from sparse feature distances (e.g. from visual SLAM).
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np
import scipy.ndimage as scipy_ndimage
from skimage import color

from attenuation_model import AttenuationCoefficients, region_mean, validate_image
from underwater_scene import UnderwaterScene


logger = logging.getLogger(__name__)


# ================================================================================
# Spatial Interpolation
# ================================================================================

class VoronoiInterpolator:
    """
    Dense distance field from sparse (point, distance) samples.

    Every pixel takes the distance of the sample whose Voronoi cell contains it.
    """

    @staticmethod
    def merge_coincident(points: np.ndarray, distances: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Collapse coincident points into one sample with their mean distance."""
        unique_points, inverse = np.unique(points, axis=0, return_inverse=True)
        inverse = inverse.reshape(-1)
        sums = np.bincount(inverse, weights=distances)
        counts = np.bincount(inverse)
        return unique_points, (sums / counts).astype(np.float32)

    @staticmethod
    def build_distance_field(shape: Tuple[int, int], points: Sequence[Sequence[float]],
                             distances: Sequence[float]) -> Optional[np.ndarray]:
        """
        Fill the Voronoi cells of the sample points with their distances.

        Args:
            shape: (rows, cols) of the image
            points: (x, y) pixel positions, all inside the image
            distances: Distance of each point

        Returns:
            float32 distance field of the given shape, or None without samples
        """
        rows, cols = shape[:2]
        points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
        distances = np.asarray(distances, dtype=np.float64).reshape(-1)

        if len(points) != len(distances):
            raise ValueError(f"Got {len(points)} points but {len(distances)} distances")
        if len(points) == 0:
            return None

        outside = (points[:, 0] < 0) | (points[:, 0] >= cols) | (points[:, 1] < 0) | (points[:, 1] >= rows)
        if np.any(outside):
            raise ValueError(f"{int(np.sum(outside))} sample points lie outside the {cols}x{rows} image")

        points, distances = VoronoiInterpolator.merge_coincident(points, distances)
        if len(points) == 1:
            return np.full((rows, cols), distances[0], dtype=np.float32)

        subdiv = cv2.Subdiv2D((0, 0, cols, rows))
        vertex_distances = {}
        for point, distance in zip(points, distances):
            vertex_id = subdiv.insert((float(point[0]), float(point[1])))
            vertex_distances.setdefault(vertex_id, []).append(float(distance))

        vertex_ids = list(vertex_distances.keys())
        facets, _ = subdiv.getVoronoiFacetList(vertex_ids)

        img_voronoi = np.zeros((rows, cols), dtype=np.float32)
        filled = np.zeros((rows, cols), dtype=np.uint8)
        for vertex_id, facet in zip(vertex_ids, facets):
            ifacet = np.rint(np.asarray(facet)).astype(np.int32)
            cv2.fillConvexPoly(img_voronoi, ifacet, float(np.mean(vertex_distances[vertex_id])))
            cv2.fillConvexPoly(filled, ifacet, 1)

        if not np.all(filled):
            # Pixels missed by every polygon take the nearest filled pixel's distance
            logger.debug(f"{int(np.sum(filled == 0))} pixels outside Voronoi polygons")
            indices = scipy_ndimage.distance_transform_edt(
                filled == 0, return_distances=False, return_indices=True)
            img_voronoi = img_voronoi[indices[0], indices[1]]

        return img_voronoi


# ================================================================================
# Colour Correction
# ================================================================================

class ColorCorrector:
    """
    Apply the inverse attenuation model to every pixel of a BGR image.
    """

    @staticmethod
    def correct_uniform(img: np.ndarray, coefficients: AttenuationCoefficients,
                        wideband_veiling_light: Sequence[float], distance: float) -> np.ndarray:
        """
        Correct an image whose content lies at a single distance.

        Args:
            img: BGR image
            coefficients: Attenuation coefficients
            wideband_veiling_light: Veiling light (B, G, R)
            distance: Camera to scene distance

        Returns:
            Corrected image with the shape and dtype of img
        """
        return ColorCorrector._apply(img, coefficients, wideband_veiling_light, float(distance))

    @staticmethod
    def correct_spatial(img: np.ndarray, coefficients: AttenuationCoefficients,
                        wideband_veiling_light: Sequence[float], distance_field: np.ndarray) -> np.ndarray:
        """
        Correct an image with a per-pixel distance field.

        Args:
            img: BGR image
            coefficients: Attenuation coefficients
            wideband_veiling_light: Veiling light (B, G, R)
            distance_field: Distance per pixel, shape (H, W)

        Returns:
            Corrected image with the shape and dtype of img
        """
        validate_image(img)
        if distance_field.shape != img.shape[:2]:
            raise ValueError(f"Distance field shape {distance_field.shape} doesn't match image shape {img.shape[:2]}")
        return ColorCorrector._apply(img, coefficients, wideband_veiling_light,
                                     distance_field.astype(np.float32))

    @staticmethod
    def _apply(img: np.ndarray, coefficients: AttenuationCoefficients,
               wideband_veiling_light: Sequence[float], distance) -> np.ndarray:
        validate_image(img)

        bgr = cv2.split(img.astype(np.float32))
        corrected_bgr = []
        for c in range(3):
            backscatter_val, direct_signal_val = coefficients.factors(c, distance)
            corrected = (bgr[c] - wideband_veiling_light[c] * backscatter_val) / direct_signal_val
            corrected_bgr.append(np.asarray(corrected, dtype=np.float32))

        corrected_img = cv2.merge(corrected_bgr)
        return restore_dtype(corrected_img, img.dtype)


def restore_dtype(img: np.ndarray, dtype) -> np.ndarray:
    """Saturate and round to an integer dtype, or return float32."""
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(img), info.min, info.max).astype(dtype)
    return img.astype(np.float32)


# ================================================================================
# Quality Metrics
# ================================================================================

def _bgr_to_lab(bgr: np.ndarray, value_range: float) -> np.ndarray:
    rgb = np.clip(np.asarray(bgr, dtype=np.float64)[::-1] / value_range, 0, 1)
    return color.rgb2lab(rgb.reshape(1, 1, 3))


def get_quality_metrics(original: np.ndarray, corrected: np.ndarray,
                        scene: UnderwaterScene) -> Dict[str, float]:
    """
    Summarize a correction.

    Args:
        original: Input BGR image
        corrected: Corrected BGR image
        scene: Scene whose patches and truth colours are compared

    Returns:
        Dict with brightness change, contrast gain and the CIEDE2000
        difference between each corrected patch and its true colour
    """
    value_range = 255.0 if original.dtype == np.uint8 else max(1.0, float(np.max(original)))
    orig = original.astype(np.float64) / value_range
    corr = corrected.astype(np.float64) / value_range

    metrics = {
        'brightness_change': float(np.mean(corr) - np.mean(orig)),
        'contrast_gain': float(np.std(corr) / (np.std(orig) + 1e-6)),
    }

    patches = (('patch_1_delta_e', scene.color_1_sample, scene.color_1_truth),
               ('patch_2_delta_e', scene.color_2_sample, scene.color_2_truth))
    for key, rect, truth in patches:
        try:
            observed = region_mean(corrected, rect)
        except ValueError as e:
            logger.warning(f"Cannot evaluate {key}: {e}")
            continue
        delta_e = color.deltaE_ciede2000(_bgr_to_lab(observed, value_range), _bgr_to_lab(truth, value_range))
        metrics[key] = float(np.squeeze(delta_e))

    return metrics
