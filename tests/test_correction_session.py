import io
import logging

import numpy as np
import pytest

from attenuation_model import (AttenuationCalibrator, AttenuationCoefficients, CalibrationDomainError,
                               region_mean)
from calibration_store import CalibrationStore, MissingCalibrationError
from correction_session import (DEFAULT_CONFIG, CalibrationMode, ColorCorrectionSession,
                                get_preset_config)
from conftest import render_frame


@pytest.mark.parametrize("prior_data, optimize, mode", [
    (True, True, CalibrationMode.USE_PRIOR),
    (True, False, CalibrationMode.USE_PRIOR),
    (False, True, CalibrationMode.REFINEMENT),
    (False, False, CalibrationMode.CLOSED_FORM),
])
def test_mode_from_flags(prior_data, optimize, mode):
    assert CalibrationMode.from_flags(prior_data, optimize) is mode


def test_preset_config():
    assert get_preset_config() == DEFAULT_CONFIG
    assert get_preset_config('timing')['check_time']
    assert get_preset_config('timing', check_time=False)['check_time'] is False
    with pytest.raises(ValueError, match="preset"):
        get_preset_config('turbo')
    with pytest.raises(ValueError, match="options"):
        get_preset_config(threshold=3)


def test_closed_form_correction(frame, scene, true_coefficients):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM)
    session.set_depth(3.6)

    corrected = session.color_correct(frame)

    np.testing.assert_allclose(session.coefficients.as_tuple(), true_coefficients.as_tuple(), atol=1e-4)
    np.testing.assert_allclose(region_mean(corrected, scene.color_1_sample), scene.color_1_truth, atol=1e-2)
    np.testing.assert_allclose(region_mean(corrected, scene.color_2_sample), scene.color_2_truth, atol=1e-2)


def test_closed_form_records_each_frame(frame, scene):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM, save_data=True)
    for depth in (3.0, 3.6):
        session.set_depth(depth)
        session.color_correct(frame)

    # Recorded under the quantized lookup key
    assert [depth for depth, _ in session.store.records] == [3.5, 4.0]


def test_closed_form_without_save_records_nothing(frame, scene):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM)
    session.color_correct(frame)
    assert session.store.records == []


def test_closed_form_degenerate_frame(scene):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM)
    with pytest.raises(CalibrationDomainError):
        session.color_correct(np.zeros((90, 120, 3), dtype=np.uint8))


def test_use_prior_lookup(frame, scene, true_coefficients):
    store = CalibrationStore()
    store.insert(4.0, true_coefficients)
    session = ColorCorrectionSession(scene, CalibrationMode.USE_PRIOR, store)
    session.set_depth(3.45)

    session.color_correct(frame)

    assert session.coefficients == true_coefficients


def test_use_prior_missing_depth(frame, scene, true_coefficients):
    store = CalibrationStore()
    store.insert(4.0, true_coefficients)
    session = ColorCorrectionSession(scene, CalibrationMode.USE_PRIOR, store)
    session.set_depth(2.0)

    with pytest.raises(MissingCalibrationError):
        session.color_correct(frame)


def test_refinement_commits_band(scene, true_coefficients, veiling_light):
    frame = render_frame(scene, true_coefficients, veiling_light)
    session = ColorCorrectionSession(scene, CalibrationMode.REFINEMENT, save_data=True)

    for depth in (3.6, 3.7, 3.9):
        session.set_depth(depth)
        session.color_correct(frame)
        assert session.coefficients is None
        assert session.store.records == []

    assert session.depth_max_range == 4.0
    assert len(session.refiner.observed_samples_green) == 6

    session.set_depth(4.1)
    session.color_correct(frame)

    assert session.depth_max_range == 4.5
    assert session.last_band_fit.converged
    np.testing.assert_allclose(session.coefficients.backscatter, true_coefficients.backscatter, atol=1e-3)
    np.testing.assert_allclose(session.coefficients.direct_signal, true_coefficients.direct_signal, atol=1e-3)

    records = session.store.records
    assert len(records) == 1
    assert records[0][0] == 4.0


def test_refinement_holds_coefficients_between_bands(scene, true_coefficients, veiling_light):
    session = ColorCorrectionSession(scene, CalibrationMode.REFINEMENT)
    frame = render_frame(scene, true_coefficients, veiling_light)
    for depth in (3.6, 3.9, 4.1):
        session.set_depth(depth)
        session.color_correct(frame)
    committed = session.coefficients.copy()

    # A different water column inside the next band
    other = AttenuationCoefficients((0.4, 0.5, 0.7), (0.3, 0.4, 0.9))
    session.set_depth(4.2)
    session.color_correct(render_frame(scene, other, veiling_light))

    assert session.coefficients == committed


def test_refinement_saved_file(scene, true_coefficients, veiling_light):
    frame = render_frame(scene, true_coefficients, veiling_light)
    session = ColorCorrectionSession(scene, CalibrationMode.REFINEMENT, save_data=True)
    for depth in (3.6, 3.9, 4.1, 4.2, 4.4, 4.6):
        session.set_depth(depth)
        session.color_correct(frame)

    sink = io.BytesIO()
    session.save(sink)
    store = CalibrationStore()

    assert store.load(io.BytesIO(sink.getvalue())) == 2
    assert store.depths() == [4.0, 4.5]


def test_spatial_correction_without_points_falls_back(frame, scene):
    spatial_session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM)
    uniform_session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM)

    spatial = spatial_session.color_correct_spatial(frame, [], [])
    uniform = uniform_session.color_correct(frame)

    np.testing.assert_array_equal(spatial, uniform)


def test_spatial_correction_with_points(frame, scene, true_coefficients):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM)
    points = [(5, 5), (100, 80)]

    corrected = session.color_correct_spatial(frame, points, [scene.distance, 2 * scene.distance])

    assert corrected.shape == frame.shape
    np.testing.assert_allclose(session.coefficients.as_tuple(), true_coefficients.as_tuple(), atol=1e-4)
    uniform = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM).color_correct(frame)
    # Nearest to the first point, which lies at the calibration distance
    np.testing.assert_allclose(corrected[0, 0], uniform[0, 0], rtol=1e-4)
    assert not np.allclose(corrected[-1, -1], uniform[-1, -1], rtol=1e-2)


def test_spectral_veiling_light(frame, scene):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM, est_veiling_light=False)
    veiling = session.estimate_veiling_light(frame)
    assert not np.allclose(veiling, region_mean(frame, scene.background_sample))


def test_stage_logging(frame, scene, caplog):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM, preset='timing')
    with caplog.at_level(logging.INFO, logger='correction_session'):
        session.color_correct(frame)

    messages = [record.getMessage() for record in caplog.records]
    assert any(m.startswith("Veiling light calculation complete. Time:") for m in messages)
    assert any(m.startswith("Color correction complete") for m in messages)



def test_closed_form_save_reloads_for_prior_session(frame, scene, true_coefficients):
    session = ColorCorrectionSession(scene, CalibrationMode.CLOSED_FORM, save_data=True)
    for depth in (3.6, 2.8):
        session.set_depth(depth)
        session.color_correct(frame)
    sink = io.BytesIO()
    session.save(sink)

    store = CalibrationStore()
    store.load(io.BytesIO(sink.getvalue()))
    prior_session = ColorCorrectionSession(scene, CalibrationMode.USE_PRIOR, store)

    for depth in (3.6, 3.7, 2.8):
        prior_session.set_depth(depth)
        prior_session.color_correct(frame)
        np.testing.assert_allclose(prior_session.coefficients.as_tuple(), true_coefficients.as_tuple(),
                                   atol=1e-4)


def test_refinement_first_band_fills_failed_channel(scene, true_coefficients, veiling_light, monkeypatch):
    fit_channel = AttenuationCalibrator.fit_channel

    def fit_without_blue(samples, channel, distance):
        fit = fit_channel(samples, channel, distance)
        if channel == 0:
            fit.converged = False
        return fit

    monkeypatch.setattr(AttenuationCalibrator, 'fit_channel', staticmethod(fit_without_blue))
    frame = render_frame(scene, true_coefficients, veiling_light)
    session = ColorCorrectionSession(scene, CalibrationMode.REFINEMENT, save_data=True)
    for depth in (3.6, 3.9, 4.1):
        session.set_depth(depth)
        session.color_correct(frame)

    assert not session.last_band_fit.converged
    assert session.last_band_fit.usable
    assert session.coefficients.is_finite()
    np.testing.assert_allclose(session.coefficients.as_tuple(), true_coefficients.as_tuple(), atol=1e-3)
    assert len(session.store.records) == 1
