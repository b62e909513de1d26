import numpy as np
import pytest

import corpower.design as cd
from corpower.errors import InputValidationError


def _tri_config(**overrides):
    config = dict(
        n_cases_tx=32,
        n_controls_tx=3654,
        n_cases_tx_with_s=32,
        ve_overall=0.75,
        risk0=0.034,
        biom_type="trichotomous",
        ve_lat0=np.linspace(0.0, 0.75, 5),
        plat0=0.2,
        plat2=0.6,
        p0=0.2,
        p2=0.6,
        sens=0.8,
        spec=0.8,
        sims=10,
    )
    config.update(overrides)
    return config


class TestDesignParameters:
    def test_approach_inferred_from_misclassification_rates(self):
        design = cd.DesignParameters(**_tri_config())
        assert design.approach is cd.Approach.MISCLASSIFICATION
        assert design.biom_type is cd.BiomarkerType.TRICHOTOMOUS

    def test_latent_correlation_when_no_rates_given(self):
        design = cd.DesignParameters(**_tri_config(sens=None, spec=None, rho=0.9))
        assert design.approach is cd.Approach.LATENT_CORRELATION

    def test_ve_lat1_defaults_to_overall_and_grids_become_tuples(self):
        design = cd.DesignParameters(**_tri_config())
        assert isinstance(design.ve_lat0, tuple)
        assert design.ve_lat1 == (0.75,) * 5
        assert design.grid == design.ve_lat0
        assert design.n_controls_with_s == 160

    def test_vector_in_scalar_field_is_rejected(self):
        with pytest.raises(InputValidationError, match="VaryingArgument"):
            cd.DesignParameters(**_tri_config(rho=[1.0, 0.9]))

    def test_mismatched_grid_lengths(self):
        with pytest.raises(InputValidationError, match="same length"):
            cd.DesignParameters(**_tri_config(ve_lat1=[0.75, 0.75]))

    def test_binary_prevalences_must_partition(self):
        with pytest.raises(InputValidationError, match="equal 1"):
            cd.DesignParameters(**_tri_config(biom_type="binary", sens=None, spec=None))

    def test_binary_misclassification_checks_implied_p0(self):
        config = _tri_config(biom_type="binary", plat2=0.8, p0=None, p2=None, sens=0.9, spec=0.9)
        design = cd.DesignParameters(**config)
        assert design.p0 is None
        implied = 0.9 * 0.2 + 0.1 * 0.8
        cd.DesignParameters(**dict(config, p0=implied, p2=1 - implied))
        with pytest.raises(InputValidationError, match="implied"):
            cd.DesignParameters(**dict(config, p0=0.2, p2=0.8))

    def test_trichotomous_needs_medium_group(self):
        with pytest.raises(InputValidationError, match="< 1"):
            cd.DesignParameters(**_tri_config(plat2=0.8))

    @pytest.mark.parametrize("field, value", [
        ("risk0", 0.0),
        ("alpha", 1.0),
        ("plat0", -0.1),
        ("sens", 1.2),
        ("ve_overall", 1.0),
    ])
    def test_out_of_range_probabilities(self, field, value):
        with pytest.raises(InputValidationError):
            cd.DesignParameters(**_tri_config(**{field: value}))

    def test_rates_must_leave_room(self):
        with pytest.raises(InputValidationError, match="spec \\+ fp0"):
            cd.DesignParameters(**_tri_config(spec=0.9, fp0=0.2))

    def test_unknown_biomarker_type(self):
        with pytest.raises(InputValidationError, match="biom_type"):
            cd.DesignParameters(**_tri_config(biom_type="ordinal"))

    def test_counts_must_be_whole(self):
        with pytest.raises(InputValidationError, match="n_cases_tx"):
            cd.DesignParameters(**_tri_config(n_cases_tx=32.5))

    @pytest.mark.parametrize("seed", ["12345", -1, 1.5, float("nan"), True])
    def test_seed_must_be_non_negative_integer(self, seed):
        with pytest.raises(InputValidationError, match="seed"):
            cd.DesignParameters(**_tri_config(seed=seed))

    @pytest.mark.parametrize("field, value", [
        ("n_cases_tx", "32"),
        ("sims", None),
        ("ve_lat0", ["low", "high"]),
    ])
    def test_non_numeric_inputs(self, field, value):
        with pytest.raises(InputValidationError, match=field):
            cd.DesignParameters(**_tri_config(**{field: value}))

    def test_controls_needed_exceed_available(self):
        with pytest.raises(InputValidationError, match="exceeds n_controls_tx"):
            cd.DesignParameters(**_tri_config(n_controls_tx=100))

    def test_cohort_requires_p(self):
        with pytest.raises(InputValidationError, match="p is required"):
            cd.DesignParameters(**_tri_config(cohort=True))
        design = cd.DesignParameters(**_tri_config(cohort=True, p=0.05))
        assert design.expected_controls_with_s == pytest.approx(0.05 * 3654)

    def test_continuous_feasibility(self):
        base = dict(
            n_cases_tx=32, n_controls_tx=3654, n_cases_tx_with_s=32,
            ve_overall=0.75, risk0=0.034, plat_ve_lowest=0.2, ve_lowest=[0.0, 0.5],
        )
        design = cd.DesignParameters(**base)
        assert design.approach is cd.Approach.LATENT_CORRELATION
        assert design.grid == (0.0, 0.5)
        with pytest.raises(InputValidationError, match="no risk"):
            cd.DesignParameters(**dict(base, ve_overall=0.85, plat_ve_lowest=0.5))
        with pytest.raises(InputValidationError, match="cannot exceed"):
            cd.DesignParameters(**dict(base, ve_lowest=[0.8]))
        with pytest.raises(InputValidationError, match="latent-correlation"):
            cd.DesignParameters(**dict(base, approach="misclassification"))


class TestVaryingArgument:
    def test_point_and_label(self):
        varying = cd.VaryingArgument.of("sens", sens=[1.0, 0.9], spec=[1.0, 0.9])
        assert len(varying) == 2
        assert varying.point(1) == {"sens": 0.9, "spec": 0.9}
        assert varying.label(0) == "sens_1"
        assert varying.label(1) == "sens_0.9"

    def test_unknown_group(self):
        with pytest.raises(InputValidationError, match="unrecognized varying argument"):
            cd.VaryingArgument.of("alpha", alpha=[0.05, 0.1])

    def test_field_outside_group(self):
        with pytest.raises(InputValidationError, match="cannot vary"):
            cd.VaryingArgument.of("rho", rho=[1.0, 0.9], sens=[1.0, 0.9])

    def test_lengths_must_match(self):
        with pytest.raises(InputValidationError, match="same length"):
            cd.VaryingArgument.of("plat", plat0=[0.1, 0.2], plat2=[0.3])

    def test_with_point_revalidates(self):
        design = cd.DesignParameters(**_tri_config())
        varying = cd.VaryingArgument.of("sens", sens=[0.9, 0.7], spec=[0.9, 0.7])
        point = design.with_point(varying, 1)
        assert (point.sens, point.spec) == (0.7, 0.7)
        assert point.ve_lat0 == design.ve_lat0
        bad = cd.VaryingArgument.of("sens", sens=[0.9, 0.95], fn2=[0.0, 0.1])
        with pytest.raises(InputValidationError):
            cd.expand_sweep(design, bad)


class TestResolveConfig:
    def test_single_vector_becomes_sweep(self):
        design, varying = cd.resolve_config(_tri_config(sens=[1.0, 0.9, 0.8], spec=[1.0, 0.9, 0.8]))
        assert varying.name == "sens"
        assert len(varying) == 3
        assert design.sens == 1.0

    def test_no_vector_gives_no_sweep(self):
        design, varying = cd.resolve_config(_tri_config())
        assert varying is None
        assert len(design.grid) == 5

    def test_length_one_vector_is_scalar(self):
        design, varying = cd.resolve_config(_tri_config(sens=[0.9]))
        assert varying is None
        assert design.sens == 0.9

    def test_two_varying_groups_rejected(self):
        with pytest.raises(InputValidationError, match="only one argument"):
            cd.resolve_config(_tri_config(sens=[1.0, 0.9], spec=[1.0, 0.9], control_case_ratio=[5, 3]))

    def test_vector_in_unsweepable_field(self):
        with pytest.raises(InputValidationError, match="cannot be supplied as a vector"):
            cd.resolve_config(_tri_config(alpha=[0.05, 0.1]))

    def test_unknown_option(self):
        with pytest.raises(InputValidationError, match="unrecognized design option"):
            cd.resolve_config(_tri_config(nCasesTx=32))

    def test_every_sweep_value_is_checked(self):
        with pytest.raises(InputValidationError, match="p"):
            cd.resolve_config(_tri_config(cohort=True, p=[0.05, 1.5]))

    def test_joint_count_sweep(self):
        config = _tri_config(
            n_cases_tx=[25, 32],
            n_controls_tx=[3661, 3654],
            n_cases_tx_with_s=[25, 32],
        )
        design, varying = cd.resolve_config(config)
        assert varying.name == "n_cases_tx"
        assert design.with_point(varying, 1).n_cases_tx_with_s == 32
        assert isinstance(design.with_point(varying, 1).n_cases_tx, int)


def test_validate_probability_open_interval():
    cd.validate_probability(0.0, "x")
    with pytest.raises(InputValidationError, match="\\(0,1\\)"):
        cd.validate_probability(0.0, "x", allow_zero=False, allow_one=False)
    with pytest.raises(InputValidationError):
        cd.validate_probability(float("nan"), "x")
