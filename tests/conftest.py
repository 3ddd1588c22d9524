"""Shared fixtures: an example scene and frames rendered with the forward model."""

import numpy as np
import pytest

from attenuation_model import AttenuationCoefficients
from underwater_scene import default_scene

FRAME_SIZE = (120, 90)  # (width, height)

TRUE_BACKSCATTER = (0.2, 0.3, 0.6)
TRUE_DIRECT_SIGNAL = (0.1, 0.2, 0.8)
VEILING_LIGHT = (150.0, 120.0, 40.0)
SCENE_COLOR = (100.0, 110.0, 90.0)


@pytest.fixture
def scene():
    return default_scene(FRAME_SIZE)


@pytest.fixture
def true_coefficients():
    return AttenuationCoefficients(TRUE_BACKSCATTER, TRUE_DIRECT_SIGNAL)


@pytest.fixture
def veiling_light():
    return np.array(VEILING_LIGHT)


@pytest.fixture
def frame(scene, true_coefficients, veiling_light):
    return render_frame(scene, true_coefficients, veiling_light)


def attenuate(truth, coefficients, veiling_light, distance):
    """Observed colour of a surface with the given true colour."""
    truth = np.asarray(truth, dtype=np.float64)
    veiling_light = np.asarray(veiling_light, dtype=np.float64)
    direct = np.exp(-coefficients.direct_signal * distance)
    backscatter = 1.0 - np.exp(-coefficients.backscatter * distance)
    return truth * direct + veiling_light * backscatter


def render_frame(scene, coefficients, veiling_light, dtype=np.float64):
    """
    Frame of a uniform scene showing both calibration patches and a patch of
    open water, everything at the scene distance.
    """
    width, height = FRAME_SIZE
    img = np.empty((height, width, 3), dtype=np.float64)
    img[:] = attenuate(SCENE_COLOR, coefficients, veiling_light, scene.distance)

    patches = ((scene.color_1_sample, scene.color_1_truth),
               (scene.color_2_sample, scene.color_2_truth))
    for (x, y, w, h), truth in patches:
        img[y:y + h, x:x + w] = attenuate(truth, coefficients, veiling_light, scene.distance)

    x, y, w, h = scene.background_sample
    img[y:y + h, x:x + w] = veiling_light

    if np.issubdtype(dtype, np.integer):
        return np.clip(np.rint(img), 0, 255).astype(dtype)
    return img.astype(dtype)
