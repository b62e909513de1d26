import math

import numpy as np
import pytest

import corpower.risk_model as rm
from corpower.design import BiomarkerType, DesignParameters
from corpower.errors import InputValidationError, InvariantViolationError


TRI = BiomarkerType.TRICHOTOMOUS
BIN = BiomarkerType.BINARY


def _default_design(**overrides) -> DesignParameters:
    params = dict(
        n_cases_tx=32,
        n_controls_tx=3654,
        n_cases_tx_with_s=32,
        ve_overall=0.75,
        risk0=0.034,
        biom_type="trichotomous",
        ve_lat0=np.linspace(0.0, 0.75, 6),
        plat0=0.2,
        plat2=0.6,
        p0=0.2,
        p2=0.6,
        sens=0.8,
        spec=0.8,
    )
    params.update(overrides)
    return DesignParameters(**params)


def _continuous_design(**overrides) -> DesignParameters:
    params = dict(
        n_cases_tx=32,
        n_controls_tx=3654,
        n_cases_tx_with_s=32,
        ve_overall=0.75,
        risk0=0.034,
        plat_ve_lowest=0.2,
        ve_lowest=np.linspace(0.0, 0.75, 4),
        rho=1.0,
    )
    params.update(overrides)
    return DesignParameters(**params)


class TestSubgroupRisk:
    def test_risk_non_increasing_in_efficacy(self):
        ve = np.linspace(0.0, 1.0, 21)
        risk = rm.subgroup_risk(0.034, ve)
        assert risk[0] == pytest.approx(0.034)
        assert risk[-1] == 0.0
        assert np.all(np.diff(risk) <= 0)

    def test_relative_risk(self):
        np.testing.assert_allclose(rm.relative_risk([0.0, 0.25, 1.0]), [1.0, 0.75, 0.0])

    def test_out_of_range_risk_raises_instead_of_clamping(self):
        with pytest.raises(InvariantViolationError):
            rm.subgroup_risk(0.5, -1.5)

    def test_high_subgroup_efficacy_averages_to_overall(self):
        ve_lat0 = np.array([0.0, 0.3, 0.75])
        ve_lat1 = np.full(3, 0.75)
        ve_lat2 = rm.latent_ve_high(0.75, 0.2, 0.6, ve_lat0, ve_lat1)
        np.testing.assert_allclose(0.2 * ve_lat0 + 0.2 * ve_lat1 + 0.6 * ve_lat2, 0.75)
        assert ve_lat2[-1] == pytest.approx(0.75)

    def test_infeasible_high_subgroup_efficacy(self):
        with pytest.raises(InputValidationError, match="exceeds 1"):
            rm.latent_ve_high(0.9, 0.2, 0.2, [0.0], [0.5])


class TestClassificationMatrices:
    def test_misclassification_matches_observed_marginals(self):
        C = rm.misclassification_matrix(TRI, 0.2, 0.6, 0.2, 0.6, sens=0.8, spec=0.8)
        np.testing.assert_allclose(C.sum(axis=0), 1.0)
        np.testing.assert_allclose(C @ np.array([0.2, 0.2, 0.6]), [0.2, 0.2, 0.6])
        np.testing.assert_allclose(C[:, 1], [0.2, 0.2, 0.6])

    def test_inconsistent_rates_are_rejected(self):
        with pytest.raises(InputValidationError, match="inconsistent"):
            rm.misclassification_matrix(TRI, 0.2, 0.6, 0.1, 0.6, sens=0.8, spec=0.9)

    def test_binary_misclassification_implies_prevalence(self):
        C = rm.misclassification_matrix(BIN, 0.2, 0.8, None, None, sens=0.9, spec=0.7)
        observed = C @ np.array([0.2, 0.0, 0.8])
        assert observed[0] == pytest.approx(0.7 * 0.2 + 0.1 * 0.8)
        assert observed[1] == 0.0

    def test_perfect_latent_correlation_is_identity(self):
        C = rm.latent_correlation_matrix(TRI, 0.2, 0.6, 0.2, 0.6, rho=1.0)
        np.testing.assert_allclose(C, np.eye(3), atol=1e-12)

    @pytest.mark.parametrize("rho", [0.3, 0.7, 0.999])
    def test_latent_correlation_columns_and_marginals(self, rho):
        C = rm.latent_correlation_matrix(TRI, 0.2, 0.6, 0.25, 0.5, rho=rho)
        np.testing.assert_allclose(C.sum(axis=0), 1.0, atol=1e-8)
        np.testing.assert_allclose(C @ np.array([0.2, 0.2, 0.6]), [0.25, 0.25, 0.5], atol=1e-7)

    def test_binary_latent_correlation(self):
        C = rm.latent_correlation_matrix(BIN, 0.3, 0.7, 0.3, 0.7, rho=0.6)
        np.testing.assert_allclose(C[1], 0.0)
        np.testing.assert_allclose(C[:, 1], 0.0)
        np.testing.assert_allclose(C[[0, 2]][:, [0, 2]].sum(axis=0), 1.0, atol=1e-8)

    def test_accuracy_degrades_with_rho(self):
        sharp = rm.classification_accuracy(TRI, 0.2, 0.6, 0.2, 0.6, rho=0.9)
        blurry = rm.classification_accuracy(TRI, 0.2, 0.6, 0.2, 0.6, rho=0.5)
        assert 0 < blurry.sens < sharp.sens < 1
        assert 0 < blurry.spec < sharp.spec < 1
        assert blurry.fp0 > sharp.fp0 >= 0


class TestDiscreteSummary:
    def test_null_grid_point_has_unit_relative_risk(self):
        summary = rm.summarize(_default_design())
        assert summary.rr_t[-1] == pytest.approx(1.0)
        assert summary.ve_lat[2, -1] == pytest.approx(0.75)

    def test_rr_t_moves_towards_null_along_grid(self):
        summary = rm.summarize(_default_design())
        assert np.all(summary.rr_t < 1.0 + 1e-12)
        assert np.all(np.diff(summary.rr_t) > 0)

    def test_observed_risks_average_to_overall(self):
        summary = rm.summarize(_default_design())
        p_obs = summary.observed_prevalence
        np.testing.assert_allclose(p_obs @ summary.risk_obs, 0.034 * 0.25)

    def test_rho_one_matches_perfect_classification(self):
        latent = rm.summarize(_default_design(sens=None, spec=None, rho=1.0))
        perfect = rm.summarize(_default_design(sens=1.0, spec=1.0))
        np.testing.assert_allclose(latent.rr_t, perfect.rr_t, rtol=1e-10)
        np.testing.assert_allclose(latent.risk_obs, perfect.risk_obs, rtol=1e-10)

    def test_measurement_error_attenuates_rr_t(self):
        perfect = rm.summarize(_default_design(sens=None, spec=None, rho=1.0))
        noisy = rm.summarize(_default_design(sens=None, spec=None, rho=0.5))
        assert noisy.rr_t[0] > perfect.rr_t[0]
        assert noisy.rr_t[0] < 1.0

    def test_rr_lat_ratio(self):
        summary = rm.summarize(_default_design())
        expected = (1 - summary.ve_lat[2]) / (1 - summary.ve_lat[0])
        np.testing.assert_allclose(summary.rr_lat_ratio, expected)
        theory = summary.theory()
        assert set(theory) == {"ve_lat2", "rr_t", "risk1_low", "risk1_med", "risk1_high", "rr_lat_ratio"}
        assert len(theory["rr_t"]) == 6

    def test_binary_summary(self):
        design = _default_design(biom_type="binary", plat2=0.8, p0=None, p2=None, sens=1.0, spec=1.0,
                                 ve_lat0=[0.2, 0.75])
        summary = rm.summarize(design)
        assert summary.prevalence[1] == 0.0
        assert math.isnan(summary.risk_obs[1, 0])
        expected_ve2 = (0.75 - 0.2 * 0.2) / 0.8
        assert summary.ve_lat[2, 0] == pytest.approx(expected_ve2)
        assert summary.rr_t[0] == pytest.approx((1 - expected_ve2) / 0.8)


class TestContinuousModel:
    def test_slope_reproduces_overall_efficacy(self):
        for ve_lowest in (0.0, 0.3, 0.6):
            beta = rm.solve_latent_slope(0.75, ve_lowest, 0.2)
            nu = float(rm.special.ndtri(0.2))
            mean = rm._normal_moment(lambda z: float(rm.latent_risk(z, 0.034, ve_lowest, beta, nu)), nu)
            assert mean == pytest.approx(0.034 * 0.25, rel=1e-6)
            assert beta < 0

    def test_slope_zero_at_null(self):
        assert rm.solve_latent_slope(0.75, 0.75, 0.2) == 0.0

    def test_slope_steepens_as_lowest_efficacy_falls(self):
        betas = [rm.solve_latent_slope(0.75, v, 0.2) for v in (0.6, 0.3, 0.0)]
        assert betas[0] > betas[1] > betas[2]

    def test_infeasible_lowest_efficacy(self):
        with pytest.raises(InputValidationError):
            rm.solve_latent_slope(0.9, 0.0, 0.2)

    def test_risk_curve_is_flat_then_decreasing(self):
        beta = rm.solve_latent_slope(0.75, 0.0, 0.2)
        nu = float(rm.special.ndtri(0.2))
        z = np.linspace(-3, 3, 61)
        risk = rm.latent_risk(z, 0.034, 0.0, beta, nu)
        np.testing.assert_allclose(risk[z <= nu], 0.034)
        assert np.all(np.diff(risk) <= 0)
        ve = rm.latent_ve_curve(z, 0.034, 0.0, beta, nu)
        assert ve[0] == pytest.approx(0.0)
        assert ve[-1] > 0.75

    def test_rr_c_null_and_attenuation(self):
        summary = rm.summarize(_continuous_design())
        assert summary.rr_c[-1] == pytest.approx(1.0, abs=1e-8)
        assert np.all(summary.rr_c[:-1] < 1.0)
        noisy = rm.summarize(_continuous_design(rho=0.5))
        assert np.all(noisy.rr_c[:-1] > summary.rr_c[:-1])
        np.testing.assert_allclose(noisy.beta, summary.beta)

    def test_theory_keys(self):
        theory = rm.summarize(_continuous_design()).theory()
        assert set(theory) == {"rr_c", "beta_lat", "alpha_lat", "nu"}
        assert all(len(values) == 4 for values in theory.values())

    def test_rr_c_is_case_control_mean_gap(self):
        beta = rm.solve_latent_slope(0.75, 0.0, 0.2)
        nu = float(rm.special.ndtri(0.2))
        risk = lambda z: float(rm.latent_risk(z, 0.034, 0.0, beta, nu))  # noqa: E731
        mean = rm._normal_moment(risk, nu)
        tilt = rm._normal_moment(lambda z: z * risk(z), nu)
        case_mean, control_mean = tilt / mean, -tilt / (1 - mean)
        rr_c = rm.cor_relative_risk(0.034, 0.0, beta, nu, rho=0.64)
        assert math.log(rr_c) == pytest.approx(0.8 * (case_mean - control_mean), rel=1e-10)
