"""
Scene constants for underwater attenuation calibration.

The scene describes the optical properties of the water column, the camera
spectral response and the geometry of the calibration target seen in every
frame. It is consumed, never mutated, by the calibration and correction code.

Channel order everywhere in this project is OpenCV's (blue, green, red).
"""

import json
import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np


logger = logging.getLogger(__name__)

Rect = Tuple[int, int, int, int]

CHANNEL_NAMES = ('blue', 'green', 'red')


# ================================================================================
# Scene Model
# ================================================================================

class UnderwaterScene:
    """
    Read-only physical and geometric constants of a calibration scene.

    Attributes:
        wavelengths: Wavelength samples in nm, shape (N,)
        b_sca: Scattering coefficient per wavelength (1/m), shape (N,)
        b_att: Beam attenuation coefficient per wavelength (1/m), shape (N,)
        irradiance: Ambient irradiance per wavelength, shape (N,)
        camera_response: Camera spectral response, shape (N, 3) in B, G, R order
        K: Normalisation constant of the spectral integral
        wavelengths_sub: Width of one wavelength sub-band in nm
        distance: Camera to calibration target distance in metres
        color_1_sample: (x, y, width, height) of the first colour patch
        color_2_sample: (x, y, width, height) of the second colour patch
        background_sample: (x, y, width, height) of a water-only region
        color_1_truth: True B, G, R value of the first patch
        color_2_truth: True B, G, R value of the second patch
    """

    FIELDS = (
        'wavelengths', 'b_sca', 'b_att', 'irradiance', 'camera_response', 'K',
        'wavelengths_sub', 'distance', 'color_1_sample', 'color_2_sample',
        'background_sample', 'color_1_truth', 'color_2_truth',
    )

    def __init__(self, wavelengths: Sequence[float], b_sca: Sequence[float],
                 b_att: Sequence[float], irradiance: Sequence[float],
                 camera_response: Sequence[Sequence[float]], K: float,
                 wavelengths_sub: float, distance: float,
                 color_1_sample: Rect, color_2_sample: Rect,
                 background_sample: Rect,
                 color_1_truth: Sequence[float], color_2_truth: Sequence[float]):
        self.wavelengths = np.array(wavelengths, dtype=np.float64)
        self.b_sca = np.array(b_sca, dtype=np.float64)
        self.b_att = np.array(b_att, dtype=np.float64)
        self.irradiance = np.array(irradiance, dtype=np.float64)
        self.camera_response = np.array(camera_response, dtype=np.float64)
        self.K = float(K)
        self.wavelengths_sub = float(wavelengths_sub)
        self.distance = float(distance)
        self.color_1_sample = _as_rect(color_1_sample, 'color_1_sample')
        self.color_2_sample = _as_rect(color_2_sample, 'color_2_sample')
        self.background_sample = _as_rect(background_sample, 'background_sample')
        self.color_1_truth = np.array(color_1_truth, dtype=np.float64)
        self.color_2_truth = np.array(color_2_truth, dtype=np.float64)

        self._validate()

        # Scenes are shared between sessions
        for array in (self.wavelengths, self.b_sca, self.b_att, self.irradiance,
                      self.camera_response, self.color_1_truth, self.color_2_truth):
            array.setflags(write=False)

    def _validate(self):
        n = self.wavelengths.shape[0]
        if self.wavelengths.ndim != 1 or n < 2:
            raise ValueError(f"Scene needs at least two wavelength samples, got shape {self.wavelengths.shape}")

        for name in ('b_sca', 'b_att', 'irradiance'):
            values = getattr(self, name)
            if values.shape != (n,):
                raise ValueError(f"Scene field '{name}' must have shape ({n},), got {values.shape}")

        if self.camera_response.shape != (n, 3):
            raise ValueError(f"Camera response must have shape ({n}, 3), got {self.camera_response.shape}")
        if np.any(self.b_att <= 0):
            raise ValueError("Attenuation coefficients b_att must be positive")
        if self.K <= 0:
            raise ValueError(f"Normalisation constant K must be positive, got {self.K}")
        if self.distance <= 0:
            raise ValueError(f"Scene distance must be positive, got {self.distance}")

        for name in ('color_1_truth', 'color_2_truth'):
            if getattr(self, name).shape != (3,):
                raise ValueError(f"Truth colour '{name}' must have 3 channels")

    def to_dict(self) -> Dict:
        """Return a JSON-serialisable description of the scene."""
        return {
            'wavelengths': self.wavelengths.tolist(),
            'b_sca': self.b_sca.tolist(),
            'b_att': self.b_att.tolist(),
            'irradiance': self.irradiance.tolist(),
            'camera_response': self.camera_response.tolist(),
            'K': self.K,
            'wavelengths_sub': self.wavelengths_sub,
            'distance': self.distance,
            'color_1_sample': list(self.color_1_sample),
            'color_2_sample': list(self.color_2_sample),
            'background_sample': list(self.background_sample),
            'color_1_truth': self.color_1_truth.tolist(),
            'color_2_truth': self.color_2_truth.tolist(),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'UnderwaterScene':
        missing = [key for key in cls.FIELDS if key not in data]
        if missing:
            raise ValueError(f"Scene description is missing fields: {', '.join(missing)}")
        return cls(**{key: data[key] for key in cls.FIELDS})

    def __repr__(self):
        return (f"UnderwaterScene(wavelengths={self.wavelengths[0]:.0f}-{self.wavelengths[-1]:.0f}nm, "
                f"distance={self.distance}, K={self.K:.4g})")


def _as_rect(rect, name: str) -> Rect:
    values = tuple(int(v) for v in rect)
    if len(values) != 4:
        raise ValueError(f"Rectangle '{name}' must be (x, y, width, height), got {rect}")
    return values


# ================================================================================
# Loading
# ================================================================================

def load_scene(path: str) -> UnderwaterScene:
    """
    Load scene constants from a JSON file.

    Args:
        path: Path to a JSON object with the fields of UnderwaterScene

    Returns:
        The loaded scene
    """
    with open(path, 'r') as f:
        data = json.load(f)
    scene = UnderwaterScene.from_dict(data)
    logger.info(f"Loaded scene constants from {path}: {scene}")
    return scene


def save_scene(scene: UnderwaterScene, path: str):
    with open(path, 'w') as f:
        json.dump(scene.to_dict(), f, indent=2)


def _gaussian_response(wavelengths: np.ndarray, peak: float, width: float) -> np.ndarray:
    return np.exp(-0.5 * ((wavelengths - peak) / width) ** 2)


def default_scene(image_size: Optional[Tuple[int, int]] = None) -> UnderwaterScene:
    """
    Example coastal-water scene with a two-patch colour target.

    Spectral properties are smooth approximations of Jerlov type II water and
    a consumer RGB sensor. K is chosen so a perfectly white, unattenuated
    signal integrates to 255 in the green channel.

    Args:
        image_size: (width, height) of the frames, used to place the sample
            rectangles. Defaults to 640x480.

    Returns:
        The example scene
    """
    width, height = image_size if image_size is not None else (640, 480)

    wavelengths = np.arange(400.0, 701.0, 10.0)
    # Scattering decreases with wavelength, absorption rises sharply in the red
    b_sca = 0.30 * (550.0 / wavelengths) ** 1.2
    absorption = 0.02 + 0.6 / (1.0 + np.exp(-(wavelengths - 600.0) / 25.0))
    b_att = absorption + b_sca
    irradiance = 1.0 - 0.4 * ((wavelengths - 480.0) / 300.0) ** 2

    camera_response = np.stack([
        _gaussian_response(wavelengths, 460.0, 30.0),
        _gaussian_response(wavelengths, 540.0, 35.0),
        _gaussian_response(wavelengths, 600.0, 30.0),
    ], axis=1)

    wavelengths_sub = 10.0
    weights = np.full(wavelengths.shape, 2.0)
    weights[[0, -1]] = 1.0
    K = float(np.sum(weights * camera_response[:, 1]) * wavelengths_sub / 255.0)

    patch = max(4, min(width, height) // 24)
    return UnderwaterScene(
        wavelengths=wavelengths,
        b_sca=b_sca,
        b_att=b_att,
        irradiance=irradiance,
        camera_response=camera_response,
        K=K,
        wavelengths_sub=wavelengths_sub,
        distance=1.0,
        color_1_sample=(width // 6, height // 2, patch, patch),
        color_2_sample=(4 * width // 6, height // 2, patch, patch),
        background_sample=(width // 2 - patch, height // 20, 2 * patch, 2 * patch),
        color_1_truth=(60.0, 60.0, 180.0),
        color_2_truth=(180.0, 170.0, 70.0),
    )
