"""
Colour correction session for a camera descending through the water column.

A session owns everything that persists between frames: the calibration mode,
the current depth and depth band, the accumulated patch observations, the
current attenuation coefficients and the calibration store. Each frame is
processed by one synchronous call; sessions are not thread safe.
"""

import logging
import time
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from attenuation_model import (AttenuationCalibrator, AttenuationCoefficients, BandFit,
                               CalibrationDomainError, DepthBandRefiner, VeilingLightEstimator,
                               quantize_depth, region_mean, validate_image)
from calibration_store import CalibrationStore
from color_correction import ColorCorrector, VoronoiInterpolator
from underwater_scene import UnderwaterScene


logger = logging.getLogger(__name__)


class CalibrationMode(Enum):
    USE_PRIOR = 'use_prior'          # look up stored coefficients by depth
    CLOSED_FORM = 'closed_form'      # two-point solve on every frame
    REFINEMENT = 'refinement'        # least squares per depth band

    @classmethod
    def from_flags(cls, prior_data: bool, optimize: bool) -> 'CalibrationMode':
        """Map the PRIOR_DATA / OPTIMIZE switches to a mode, prior data first."""
        if prior_data:
            return cls.USE_PRIOR
        if optimize:
            return cls.REFINEMENT
        return cls.CLOSED_FORM


DEFAULT_CONFIG = {
    'range': 0.5,               # depth band height in metres
    'est_veiling_light': True,  # sample the background instead of integrating the spectrum
    'save_data': False,         # record coefficients for CalibrationStore.save
    'log_screen': False,        # log each processing stage
    'check_time': False,        # log elapsed time of each stage
}


SESSION_PRESETS = {
    'default': {},
    'verbose': {'log_screen': True},
    'timing': {'log_screen': True, 'check_time': True},
    'survey': {'save_data': True},
}


def get_preset_config(preset: str = 'default', **overrides) -> Dict:
    """
    Session options of a preset with explicit overrides applied on top.

    Raises:
        ValueError: For an unknown preset or option name
    """
    if preset not in SESSION_PRESETS:
        raise ValueError(f"Unknown preset '{preset}'. Available: {', '.join(SESSION_PRESETS)}")
    unknown = set(overrides) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"Unknown session options: {', '.join(sorted(unknown))}")
    config = dict(DEFAULT_CONFIG)
    config.update(SESSION_PRESETS[preset])
    config.update(overrides)
    return config


class ColorCorrectionSession:
    """
    Calibrate and correct a sequence of frames of the same scene.

    Example:
        session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM)
        session.set_depth(4.2)
        corrected = session.color_correct(frame)
    """

    def __init__(self, scene: UnderwaterScene, mode: CalibrationMode = CalibrationMode.CLOSED_FORM,
                 store: Optional[CalibrationStore] = None, preset: str = 'default', **options):
        """
        Initialize the session.

        Args:
            scene: Scene constants
            mode: How attenuation coefficients are obtained
            store: Calibration store, required to hold data for USE_PRIOR
            preset: Name of a SESSION_PRESETS entry
            **options: Overrides of the preset options
        """
        self.scene = scene
        self.mode = mode
        self.config = get_preset_config(preset, **options)
        self.store = store if store is not None else CalibrationStore()

        self.depth = 0.0
        self.coefficients: Optional[AttenuationCoefficients] = None
        self.refiner = DepthBandRefiner(self.config['range'])
        self.last_band_fit: Optional[BandFit] = None

        self._stage_start = None

        if mode is CalibrationMode.USE_PRIOR and len(self.store) == 0:
            logger.warning("Session uses prior data but the calibration store is empty")

    @property
    def depth_max_range(self) -> Optional[float]:
        return self.refiner.depth_max_range

    def set_depth(self, depth: float):
        self.depth = float(depth)

    # --------------------------------------------------------------------------
    # Stage logging
    # --------------------------------------------------------------------------

    def _start_stage(self):
        self._stage_start = time.time()

    def _log_stage(self, message: str):
        if self._stage_start is None:
            self._start_stage()
        if self.config['check_time']:
            elapsed = time.time() - self._stage_start
            logger.info(f"{message}. Time: {elapsed:.4f}s")
            self._stage_start = time.time()
        elif self.config['log_screen']:
            logger.info(message)

    # --------------------------------------------------------------------------
    # Calibration
    # --------------------------------------------------------------------------

    def estimate_veiling_light(self, img: np.ndarray) -> np.ndarray:
        veiling = VeilingLightEstimator.estimate(img, self.scene, self.config['est_veiling_light'])
        self._log_stage("Veiling light calculation complete")
        return veiling

    def observe_patches(self, img: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Mean observed colour of both calibration patches."""
        return region_mean(img, self.scene.color_1_sample), region_mean(img, self.scene.color_2_sample)

    def _closed_form(self, img: np.ndarray, veiling: np.ndarray) -> AttenuationCoefficients:
        color_1_obs, color_2_obs = self.observe_patches(img)
        return AttenuationCalibrator.calc_attenuation(
            color_1_obs, color_2_obs, veiling,
            self.scene.color_1_truth, self.scene.color_2_truth, self.scene.distance)

    def _band_fallback(self, img: np.ndarray, veiling: np.ndarray) -> Optional[AttenuationCoefficients]:
        """Closed-form estimate of this frame for channels the first band failed to fit."""
        try:
            return self._closed_form(img, veiling)
        except CalibrationDomainError as e:
            logger.warning(f"No closed-form fallback for failed band channels: {e}")
            return None

    def calculate_optimized_attenuation(self, img: np.ndarray,
                                        veiling: Optional[np.ndarray] = None) -> Optional[BandFit]:
        """
        Feed one frame to the depth-band refinement.

        Inside the current band the frame's patch observations are stored.
        The first frame below the band fits all channels, commits the
        coefficients and starts the next band. Channels whose fit failed keep
        the previous band's values, or on the first band take this frame's
        closed-form estimate.

        Returns:
            The band fit if this frame closed a band, otherwise None
        """
        validate_image(img)
        if veiling is None:
            self._start_stage()
            veiling = self.estimate_veiling_light(img)

        color_1_obs, color_2_obs = self.observe_patches(img)
        band = self.refiner.update(self.depth, color_1_obs, color_2_obs, veiling,
                                   self.scene.color_1_truth, self.scene.color_2_truth,
                                   self.scene.distance)
        if band is None:
            return None

        self.last_band_fit = band
        previous = self.coefficients
        if previous is None and band.usable and not band.converged:
            previous = self._band_fallback(img, veiling)
        merged = band.merge_into(previous)
        if merged is None or not merged.is_finite():
            logger.warning(f"Depth band ending at {band.depth_max_range} produced no usable coefficients")
            return band

        self.coefficients = merged
        logger.info(f"Depth band ending at {band.depth_max_range} optimized: {merged}")
        if self.config['save_data']:
            self.store.record(band.depth_max_range, merged)
        return band

    def calibrate(self, img: np.ndarray, veiling: Optional[np.ndarray] = None) -> AttenuationCoefficients:
        """
        Attenuation coefficients to correct this frame with.

        Args:
            img: BGR frame showing the calibration patches
            veiling: Veiling light, estimated from img when omitted

        Returns:
            Coefficients for the current depth

        Raises:
            MissingCalibrationError: In USE_PRIOR mode without data for the depth
            CalibrationDomainError: If the closed-form solve has no solution
        """
        if veiling is None:
            veiling = self.estimate_veiling_light(img)

        if self.mode is CalibrationMode.USE_PRIOR:
            self.coefficients = self.store.lookup(self.depth)
            coefficients = self.coefficients
        elif self.mode is CalibrationMode.CLOSED_FORM:
            self.coefficients = self._closed_form(img, veiling)
            coefficients = self.coefficients
        else:
            self.calculate_optimized_attenuation(img, veiling)
            if self.coefficients is not None:
                coefficients = self.coefficients
            else:
                # No band committed yet
                coefficients = self._closed_form(img, veiling)

        self._log_stage("Attenuation calculation complete")
        return coefficients

    # --------------------------------------------------------------------------
    # Correction
    # --------------------------------------------------------------------------

    def _record_correction(self, coefficients: AttenuationCoefficients):
        # Refinement records once per committed band instead
        if self.config['save_data'] and self.mode is not CalibrationMode.REFINEMENT:
            # Saved under the key lookup() will ask for
            self.store.record(quantize_depth(self.depth), coefficients)

    def color_correct(self, img: np.ndarray) -> np.ndarray:
        """
        Correct a frame assuming everything lies at the scene distance.

        Args:
            img: BGR frame

        Returns:
            Corrected frame with the shape and dtype of img
        """
        validate_image(img)
        self._start_stage()
        self._log_stage("Set image for processing complete")

        veiling = self.estimate_veiling_light(img)
        coefficients = self.calibrate(img, veiling)

        corrected = ColorCorrector.correct_uniform(img, coefficients, veiling, self.scene.distance)
        self._log_stage("Color correction complete")

        self._record_correction(coefficients)
        return corrected

    def color_correct_spatial(self, img: np.ndarray, point_data: Sequence[Sequence[float]],
                              distance_data: Sequence[float]) -> np.ndarray:
        """
        Correct a frame with distances interpolated from sparse feature points.

        Args:
            img: BGR frame
            point_data: (x, y) pixel positions of tracked features
            distance_data: Camera distance of each feature

        Returns:
            Corrected frame with the shape and dtype of img
        """
        validate_image(img)
        self._start_stage()

        distance_field = VoronoiInterpolator.build_distance_field(img.shape[:2], point_data, distance_data)
        if distance_field is None:
            logger.info("No feature distances, falling back to uniform correction")
            return self.color_correct(img)
        self._log_stage("Set image for processing complete")

        veiling = self.estimate_veiling_light(img)
        coefficients = self.calibrate(img, veiling)

        corrected = ColorCorrector.correct_spatial(img, coefficients, veiling, distance_field)
        self._log_stage("Color correction complete")

        self._record_correction(coefficients)
        return corrected

    def save(self, sink):
        self.store.save(sink)
