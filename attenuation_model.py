"""
Underwater Attenuation Model and Calibration

Physical model of light propagation between a calibration target and the
camera, and the two ways of calibrating it from a pair of reference colour
patches with known true colour.

The observed value of a channel c at distance z is modelled as:
    I_c = J_c * exp(-beta_D_c * z) + V_c * (1 - exp(-beta_B_c * z))

where:
    - J_c: true (unattenuated) colour
    - V_c: wideband veiling light
    - beta_B_c: backscatter attenuation coefficient
    - beta_D_c: direct signal attenuation coefficient

Calibration recovers (beta_B, beta_D) per channel either analytically from two
patches seen in one frame, or by nonlinear least squares over all patch
observations collected while the camera descends through a depth band.

References:
    - Akkaynak, D., & Treibitz, T. (2018). A revised underwater image formation model.
    - Roznere, M., & Quattrini Li, A. (2019). Real-time model-based image color
      correction for underwater robots.
"""

import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
import scipy.optimize as opt

from underwater_scene import CHANNEL_NAMES, Rect, UnderwaterScene


logger = logging.getLogger(__name__)

# Stop criterion of the refinement fit: relative change of the objective
OBJECTIVE_DELTA_STOP = 1e-7


class CalibrationDomainError(ValueError):
    """Calibration inputs for which the model has no finite solution."""


# ================================================================================
# Attenuation Coefficients
# ================================================================================

class AttenuationCoefficients:
    """
    Backscatter and direct signal attenuation coefficients of the three channels.

    Both vectors are always produced together by one calibration and are
    indexed blue, green, red.
    """

    def __init__(self, backscatter: Sequence[float], direct_signal: Sequence[float]):
        self.backscatter = np.array(backscatter, dtype=np.float64).reshape(3)
        self.direct_signal = np.array(direct_signal, dtype=np.float64).reshape(3)

    @classmethod
    def from_tuple(cls, values: Sequence[float]) -> 'AttenuationCoefficients':
        """Build from the persisted 6-tuple (3 backscatter, 3 direct signal)."""
        values = [float(v) for v in values]
        if len(values) != 6:
            raise ValueError(f"Expected 6 attenuation values, got {len(values)}")
        return cls(values[:3], values[3:])

    def as_tuple(self) -> Tuple[float, ...]:
        return tuple(float(v) for v in self.backscatter) + tuple(float(v) for v in self.direct_signal)

    def factors(self, channel: int, distance) -> Tuple[np.ndarray, np.ndarray]:
        """
        Backscatter and direct signal factors of one channel.

        Args:
            channel: Channel index (0 blue, 1 green, 2 red)
            distance: Scalar distance or per-pixel distance field

        Returns:
            Tuple of (1 - exp(-beta_B * z), exp(-beta_D * z)) with the shape of distance
        """
        backscatter_val = 1.0 - np.exp(-1.0 * self.backscatter[channel] * distance)
        direct_signal_val = np.exp(-1.0 * self.direct_signal[channel] * distance)
        return backscatter_val, direct_signal_val

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.backscatter)) and np.all(np.isfinite(self.direct_signal)))

    def copy(self) -> 'AttenuationCoefficients':
        return AttenuationCoefficients(self.backscatter, self.direct_signal)

    def __eq__(self, other):
        if not isinstance(other, AttenuationCoefficients):
            return NotImplemented
        return self.as_tuple() == other.as_tuple()

    def __repr__(self):
        bs = ', '.join(f"{v:.4f}" for v in self.backscatter)
        ds = ', '.join(f"{v:.4f}" for v in self.direct_signal)
        return f"AttenuationCoefficients(backscatter=[{bs}], direct_signal=[{ds}])"


def quantize_depth(depth: float) -> float:
    """
    Quantize a depth to the key used by calibration tables and depth bands.

    The key is round(|(depth + 0.5) * 2|) / 2 with halves rounded away from
    zero, so every key is a multiple of 0.5.
    """
    scaled = abs((float(depth) + 0.5) * 2.0)
    return float(np.floor(scaled + 0.5)) / 2.0


# ================================================================================
# Image Regions
# ================================================================================

def validate_image(img: np.ndarray):
    if img is None:
        raise ValueError("Input image cannot be None")
    if img.ndim != 3 or img.shape[2] != 3:
        raise ValueError(f"Input image must be BGR with shape (H, W, 3), got {img.shape}")


def region_mean(img: np.ndarray, rect: Rect) -> np.ndarray:
    """
    Per-channel mean pixel value inside a rectangle.

    Args:
        img: BGR image
        rect: (x, y, width, height), must lie inside the image

    Returns:
        Array of 3 channel means
    """
    x, y, w, h = rect
    rows, cols = img.shape[:2]
    if w <= 0 or h <= 0:
        raise ValueError(f"Sample rectangle {rect} is empty")
    if x < 0 or y < 0 or x + w > cols or y + h > rows:
        raise ValueError(f"Sample rectangle {rect} lies outside the {cols}x{rows} image")

    region = img[y:y + h, x:x + w].reshape(-1, img.shape[2])
    return region.astype(np.float64).mean(axis=0)


# ================================================================================
# Veiling Light Estimation
# ================================================================================

class VeilingLightEstimator:
    """
    Estimate the wideband veiling light, the colour of water at infinite distance.
    """

    @staticmethod
    def sample_background(img: np.ndarray, rect: Rect) -> np.ndarray:
        """
        Estimate veiling light as the mean colour of a water-only region.

        Args:
            img: BGR image
            rect: Background rectangle (x, y, width, height)

        Returns:
            Veiling light (B, G, R)
        """
        return region_mean(img, rect)

    @staticmethod
    def integrate_spectrum(scene: UnderwaterScene) -> np.ndarray:
        """
        Calculate veiling light from the water and camera spectral properties.

        Integrates b_sca * E / b_att weighted by the camera response over the
        wavelength samples with end points weighted 1 and interior points 2,
        scaled by wavelengths_sub / K.

        Args:
            scene: Scene constants

        Returns:
            Veiling light (B, G, R)
        """
        weights = np.full(scene.wavelengths.shape, 2.0)
        weights[0] = 1.0
        weights[-1] = 1.0

        per_wavelength = scene.b_sca * scene.irradiance / scene.b_att
        wideband_veiling_light = (weights * per_wavelength) @ scene.camera_response

        return wideband_veiling_light * (1.0 / scene.K * scene.wavelengths_sub)

    @staticmethod
    def estimate(img: np.ndarray, scene: UnderwaterScene, sample_background: bool) -> np.ndarray:
        if sample_background:
            return VeilingLightEstimator.sample_background(img, scene.background_sample)
        return VeilingLightEstimator.integrate_spectrum(scene)


# ================================================================================
# Closed-form Calibration
# ================================================================================

class AttenuationCalibrator:
    """
    Solve the attenuation coefficients from two reference patches.
    """

    @staticmethod
    def model(inputs: np.ndarray, params: Sequence[float]) -> np.ndarray:
        """
        Invert the image formation model for a set of observations.

        Args:
            inputs: Array of shape (M, 2) holding (observed value, veiling light)
            params: (backscatter factor, direct signal factor)

        Returns:
            Corrected values, shape (M,)
        """
        backscatter_val, direct_signal_val = params
        observed_color = inputs[:, 0]
        wideband_veiling_light = inputs[:, 1]
        return (observed_color - wideband_veiling_light * backscatter_val) / direct_signal_val

    @staticmethod
    def residual(params: np.ndarray, inputs: np.ndarray, truths: np.ndarray) -> np.ndarray:
        return AttenuationCalibrator.model(inputs, params) - truths

    @staticmethod
    def calc_attenuation(color_1_obs: Sequence[float], color_2_obs: Sequence[float],
                         wideband_veiling_light: Sequence[float],
                         color_1_truth: Sequence[float], color_2_truth: Sequence[float],
                         distance: float) -> AttenuationCoefficients:
        """
        Closed-form two-point solve of the attenuation coefficients.

        Args:
            color_1_obs: Observed mean colour of the first patch
            color_2_obs: Observed mean colour of the second patch
            wideband_veiling_light: Veiling light
            color_1_truth: True colour of the first patch
            color_2_truth: True colour of the second patch
            distance: Camera to target distance

        Returns:
            Attenuation coefficients

        Raises:
            CalibrationDomainError: If a channel has no finite solution
        """
        o1 = np.asarray(color_1_obs, dtype=np.float64)[:3]
        o2 = np.asarray(color_2_obs, dtype=np.float64)[:3]
        veil = np.asarray(wideband_veiling_light, dtype=np.float64)[:3]
        t1 = np.asarray(color_1_truth, dtype=np.float64)[:3]
        t2 = np.asarray(color_2_truth, dtype=np.float64)[:3]

        if distance <= 0:
            raise CalibrationDomainError(f"Distance must be positive, got {distance}")

        backscatter_att = np.zeros(3)
        direct_signal_att = np.zeros(3)

        for i, name in enumerate(CHANNEL_NAMES):
            truth_diff = t2[i] - t1[i]
            if truth_diff == 0:
                raise CalibrationDomainError(f"{name} channel: truth colours of both patches are equal")
            if veil[i] == 0:
                raise CalibrationDomainError(f"{name} channel: veiling light is zero")
            if t2[i] == 0:
                raise CalibrationDomainError(f"{name} channel: truth colour of the second patch is zero")

            channel_bs = (t1[i] * o2[i]) - (t2[i] * o1[i]) + truth_diff * veil[i]
            channel_bs = channel_bs / (truth_diff * veil[i])
            if not channel_bs > 0:
                raise CalibrationDomainError(
                    f"{name} channel: backscatter term {channel_bs:.6g} is not positive")
            backscatter_att[i] = -1.0 * np.log(channel_bs) / distance

            channel_ds = o2[i] - veil[i] * (1.0 - np.exp(-1.0 * backscatter_att[i] * distance))
            channel_ds = channel_ds / t2[i]
            if not channel_ds > 0:
                raise CalibrationDomainError(
                    f"{name} channel: direct signal term {channel_ds:.6g} is not positive")
            direct_signal_att[i] = -1.0 * np.log(channel_ds) / distance

        return AttenuationCoefficients(backscatter_att, direct_signal_att)

    @staticmethod
    def fit_channel(samples: Sequence[Tuple[Tuple[float, float], float]], channel: int,
                    distance: float) -> 'ChannelFit':
        """
        Levenberg-Marquardt fit of one channel's model factors.

        Args:
            samples: ((observed, veiling), truth) pairs of a single channel
            channel: Channel index, for reporting
            distance: Distance used to convert factors to attenuation coefficients

        Returns:
            Fit result of the channel
        """
        inputs = np.array([s[0] for s in samples], dtype=np.float64).reshape(-1, 2)
        truths = np.array([s[1] for s in samples], dtype=np.float64)

        result = opt.least_squares(
            AttenuationCalibrator.residual,
            x0=np.ones(2),
            args=(inputs, truths),
            method='lm',
            ftol=OBJECTIVE_DELTA_STOP,
        )

        fit = ChannelFit(
            channel=channel,
            backscatter_val=float(result.x[0]),
            direct_signal_val=float(result.x[1]),
            converged=bool(result.success),
            status=int(result.status),
            cost=float(result.cost),
            nfev=int(result.nfev),
            n_samples=len(truths),
        )
        fit.to_attenuation(distance)
        return fit


class ChannelFit:
    """
    Result of the least squares refinement of one channel.

    Attributes:
        backscatter_val: Fitted backscatter factor (1 - exp(-beta_B * z))
        direct_signal_val: Fitted direct signal factor (exp(-beta_D * z))
        converged: Whether the optimizer met its tolerance
        status: scipy termination status
        cost: Final objective (half the sum of squared residuals)
        nfev: Number of residual evaluations
        backscatter: Backscatter attenuation coefficient, None if the factors
            have no physical solution
        direct_signal: Direct signal attenuation coefficient, None likewise
    """

    def __init__(self, channel: int, backscatter_val: float, direct_signal_val: float,
                 converged: bool, status: int, cost: float, nfev: int, n_samples: int):
        self.channel = channel
        self.backscatter_val = backscatter_val
        self.direct_signal_val = direct_signal_val
        self.converged = converged
        self.status = status
        self.cost = cost
        self.nfev = nfev
        self.n_samples = n_samples
        self.backscatter = None
        self.direct_signal = None

    def to_attenuation(self, distance: float):
        if 1.0 - self.backscatter_val > 0 and self.direct_signal_val > 0:
            self.backscatter = float(-np.log(1.0 - self.backscatter_val) / distance)
            self.direct_signal = float(-np.log(self.direct_signal_val) / distance)

    @property
    def valid(self) -> bool:
        return self.converged and self.backscatter is not None

    def __repr__(self):
        return (f"ChannelFit({CHANNEL_NAMES[self.channel]}, factors=({self.backscatter_val:.4f}, "
                f"{self.direct_signal_val:.4f}), converged={self.converged}, cost={self.cost:.4g})")


# ================================================================================
# Depth-band Refinement
# ================================================================================

class BandFit:
    """Outcome of optimizing the samples of one depth band."""

    def __init__(self, depth_max_range: float, fits: List[Optional[ChannelFit]]):
        self.depth_max_range = depth_max_range
        self.fits = fits

    @property
    def converged(self) -> bool:
        return all(fit is not None and fit.valid for fit in self.fits)

    @property
    def usable(self) -> bool:
        """Whether at least one channel produced a valid fit."""
        return any(fit is not None and fit.valid for fit in self.fits)

    def merge_into(self, previous: Optional[AttenuationCoefficients]) -> Optional[AttenuationCoefficients]:
        """
        Coefficients after this band, keeping previous values for failed channels.

        Returns None when no channel produced a usable fit and there is nothing
        to keep.
        """
        if previous is None and not self.usable:
            return None

        merged = previous.copy() if previous is not None else AttenuationCoefficients(np.full(3, np.nan),
                                                                                       np.full(3, np.nan))
        for i, fit in enumerate(self.fits):
            if fit is not None and fit.valid:
                merged.backscatter[i] = fit.backscatter
                merged.direct_signal[i] = fit.direct_signal
        return merged


class DepthBandRefiner:
    """
    Accumulate patch observations over a depth band and refine the model on exit.

    Samples are collected while depth_max_range - range <= depth < depth_max_range.
    The first call with depth > depth_max_range fits each channel independently,
    clears all samples and advances depth_max_range by range.
    """

    def __init__(self, depth_range: float = 0.5):
        if depth_range <= 0:
            raise ValueError(f"Depth band range must be positive, got {depth_range}")
        self.range = float(depth_range)
        self.depth_max_range = None
        self.observed_samples = ([], [], [])

    @property
    def observed_samples_blue(self):
        return self.observed_samples[0]

    @property
    def observed_samples_green(self):
        return self.observed_samples[1]

    @property
    def observed_samples_red(self):
        return self.observed_samples[2]

    def in_band(self, depth: float) -> bool:
        return self.depth_max_range - self.range <= depth < self.depth_max_range

    def add_observation(self, color_1_obs: Sequence[float], color_2_obs: Sequence[float],
                        wideband_veiling_light: Sequence[float],
                        color_1_truth: Sequence[float], color_2_truth: Sequence[float]):
        """Append one sample per patch to every channel's sequence."""
        for c in range(3):
            veil = float(wideband_veiling_light[c])
            self.observed_samples[c].append(((float(color_1_obs[c]), veil), float(color_1_truth[c])))
            self.observed_samples[c].append(((float(color_2_obs[c]), veil), float(color_2_truth[c])))

    def update(self, depth: float, color_1_obs: Sequence[float], color_2_obs: Sequence[float],
               wideband_veiling_light: Sequence[float], color_1_truth: Sequence[float],
               color_2_truth: Sequence[float], distance: float) -> Optional[BandFit]:
        """
        Feed one frame's patch observations taken at the given depth.

        Returns:
            BandFit when this call closed a band, otherwise None
        """
        if self.depth_max_range is None:
            self.depth_max_range = quantize_depth(depth)
            logger.debug(f"Depth band initialized: max range {self.depth_max_range}")

        if self.in_band(depth):
            self.add_observation(color_1_obs, color_2_obs, wideband_veiling_light,
                                 color_1_truth, color_2_truth)
            return None

        if depth > self.depth_max_range:
            return self._optimize(distance)

        return None

    def _optimize(self, distance: float) -> BandFit:
        fits = []
        for c, name in enumerate(CHANNEL_NAMES):
            samples = self.observed_samples[c]
            if len(samples) < 2:
                logger.warning(f"Depth band ending at {self.depth_max_range}: only {len(samples)} "
                               f"{name} samples, skipping optimization")
                fits.append(None)
                continue

            fit = AttenuationCalibrator.fit_channel(samples, c, distance)
            if not fit.converged:
                logger.warning(f"{name} channel fit did not converge (status {fit.status}, cost {fit.cost:.4g})")
            elif fit.backscatter is None:
                logger.warning(f"{name} channel fit factors ({fit.backscatter_val:.4f}, "
                               f"{fit.direct_signal_val:.4f}) have no physical solution")
            logger.debug(f"{fit!r}")
            fits.append(fit)

        band = BandFit(self.depth_max_range, fits)

        for samples in self.observed_samples:
            samples.clear()
        self.depth_max_range += self.range

        return band
