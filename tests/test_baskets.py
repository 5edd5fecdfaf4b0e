import numpy as np
import pandas as pd
import pytest
from scipy.stats import norm

from cdoloss import (BASKET_MODELS, Basket, BasketSettings, Copula, FactorLoadings, FlatHazardCurve,
                     HeterogeneousBasket, LargePoolBasket, LossDistributionGrid, Name, RecoveryCurve,
                     SemiAnalyticBasket, UniformBasket, UnsupportedConfigurationError, ValidationError,
                     create_basket_model)

from conftest import AS_OF, TRANCHES, expected_refinanced_pool


def test_registry():
    for kind in ("uniform", "homogeneous", "heterogeneous", "semi_analytic", "large_pool", "ntd", "cdo2",
                 "monte_carlo"):
        assert kind in BASKET_MODELS
    with pytest.raises(ValidationError):
        create_basket_model("binomial", None)


def test_variants_agree_with_uniform_reference(uniform_basket):
    reference = UniformBasket(uniform_basket)
    expected = np.vstack([reference.base_loss(date, TRANCHES) for date in uniform_basket.dates])
    for kind in ("homogeneous", "heterogeneous", "semi_analytic"):
        model = create_basket_model(kind, uniform_basket)
        base = np.vstack([model.base_loss(date, TRANCHES) for date in uniform_basket.dates])
        np.testing.assert_allclose(np.diff(base, axis=1), np.diff(expected, axis=1), rtol=0.0, atol=1e-7,
                                   err_msg=kind)


def test_cumulative_is_a_distribution(uniform_basket):
    levels = np.linspace(0.0, 1.0, 41)
    date = uniform_basket.dates[-1]
    for kind in ("uniform", "homogeneous", "heterogeneous", "semi_analytic", "large_pool"):
        values = create_basket_model(kind, uniform_basket).cumulative(date, levels)
        assert np.all(np.diff(values) >= -1e-12)
        assert np.all((values >= 0.0) & (values <= 1.0))
        assert values[-1] == 1.0


def test_expected_loss_is_sum_of_name_losses(mixed_names, make_basket, pool_loss):
    names = mixed_names()
    basket = make_basket(names)
    model = HeterogeneousBasket(basket)
    expected = pool_loss(names, basket.dates)
    for j, date in enumerate(basket.dates):
        assert model.expected_loss(date) == pytest.approx(expected[j], abs=1e-8)


def test_permutation_invariance(mixed_names, make_basket):
    names = mixed_names()
    loadings = np.linspace(0.2, 0.7, len(names))
    order = np.random.default_rng(11).permutation(len(names))
    model = HeterogeneousBasket(make_basket(names, correlation=loadings))
    shuffled = HeterogeneousBasket(make_basket([names[i] for i in order], correlation=loadings[order]))
    date = model.basket.dates[-1]
    for low, high in zip(TRANCHES[:-1], TRANCHES[1:]):
        assert shuffled.accumulated_loss(date, low, high) == \
            pytest.approx(model.accumulated_loss(date, low, high), abs=1e-10)


def test_riskless_basket(uniform_names, make_basket):
    model = HeterogeneousBasket(make_basket(uniform_names(20, hazard=0.0)))
    date = model.basket.dates[-1]
    np.testing.assert_allclose(model.cumulative(date, [0.0, 0.5, 1.0]), 1.0)
    assert model.expected_loss(date) == 0.0


def test_defaulted_pool_is_a_total_loss(make_basket):
    curve = FlatHazardCurve(AS_OF, 0.01)
    names = [Name(f"D{i}", curve, 0.0, default_date=AS_OF - pd.Timedelta(days=30)) for i in range(10)]
    model = SemiAnalyticBasket(make_basket(names))
    date = model.basket.dates[0]
    assert model.expected_loss(date) == pytest.approx(1.0)
    np.testing.assert_allclose(model.cumulative(date, [0.0, 0.999, 1.0]), [0.0, 0.0, 1.0])


def test_names_split_under_one_identifier(make_basket):
    curve = FlatHazardCurve(AS_OF, 0.02)
    others = [Name(f"O{i}", FlatHazardCurve(AS_OF, 0.01 + 0.002 * i), 0.4) for i in range(8)]
    whole = others + [Name("X", curve, 0.4, principal=2.0)]
    split = others + [Name("X", curve, 0.4, principal=1.5), Name("X", curve, 0.4, principal=0.5)]
    a = HeterogeneousBasket(make_basket(whole))
    b = HeterogeneousBasket(make_basket(split))
    date = a.basket.dates[-1]
    np.testing.assert_allclose(b.base_loss(date, TRANCHES), a.base_loss(date, TRANCHES), atol=1e-10)


def test_split_entries_must_share_curves(make_basket):
    names = [Name("X", FlatHazardCurve(AS_OF, 0.02), 0.4), Name("X", FlatHazardCurve(AS_OF, 0.03), 0.4)]
    with pytest.raises(ValidationError):
        HeterogeneousBasket(make_basket(names))
    same = [Name("X", names[0].survival_curve, 0.4), Name("X", names[0].survival_curve, 0.4)]
    model = HeterogeneousBasket(make_basket(same))
    same[1].survival_curve = names[1].survival_curve
    with pytest.raises(ValidationError):
        model.reset()


def test_reset_reads_changed_principals(mixed_names, make_basket, pool_loss):
    names = mixed_names(10)
    basket = make_basket(names)
    model = SemiAnalyticBasket(basket)
    date = basket.dates[-1]
    before = model.expected_loss(date)
    names[0].principal = 0.0
    assert model.expected_loss(date) == before
    model.reset()
    after = model.expected_loss(date)
    assert after == pytest.approx(pool_loss(names[1:], basket.dates)[-1], abs=1e-8)
    assert abs(after - before) > 1e-4
    for name in names:
        name.principal = 0.0
    with pytest.raises(ValidationError):
        model.reset()


def test_reset_reads_changed_correlation(uniform_names, make_basket):
    basket = make_basket(uniform_names(30, hazard=0.02), correlation=0.2)
    model = HeterogeneousBasket(basket)
    date = basket.dates[-1]
    senior = model.accumulated_loss(date, 0.1, 1.0)
    basket.loadings = FactorLoadings.from_scalar(0.5, len(basket))
    model.reset()
    assert model.accumulated_loss(date, 0.1, 1.0) > senior
    model.set_factor(0.0)
    independent = model.accumulated_loss(date, 0.1, 1.0)
    assert independent < senior
    model.reset()
    assert model.accumulated_loss(date, 0.1, 1.0) == pytest.approx(independent, abs=1e-12)


def test_student_t_with_several_factors_fails_at_construction(mixed_names, make_basket):
    names = mixed_names(6)
    basket = make_basket(names, correlation=np.vstack([np.full(6, 0.3), np.full(6, 0.2)]),
                         copula=Copula.student_t(5, 5))
    for kind in ("heterogeneous", "semi_analytic", "monte_carlo"):
        with pytest.raises(UnsupportedConfigurationError):
            create_basket_model(kind, basket)


def test_short_names_reduce_loss(mixed_names, make_basket, pool_loss):
    longs = mixed_names(10)
    shorts = [Name(f"S{i}", FlatHazardCurve(AS_OF, 0.03), 0.4, principal=-1.0) for i in range(3)]
    basket = make_basket(longs + shorts)
    model = HeterogeneousBasket(basket)
    long_only = HeterogeneousBasket(make_basket(longs))
    date = basket.dates[-1]
    short_loss = sum(0.6 * (1.0 - s.survival_curve.survival([date])[0]) for s in shorts)
    signed = pool_loss(longs, basket.dates)[-1] - short_loss / basket.total_principal
    # E[max(L, 0)] >= E[L], and shorts only ever offset long losses
    assert model.expected_loss(date) >= signed - 1e-10
    assert 0.0 <= model.expected_loss(date) <= long_only.expected_loss(date) + 1e-10


def test_defaulted_names_reduce_the_pool(uniform_names, make_basket):
    names = uniform_names(40, hazard=0.02)
    defaulted = [Name(n.identifier, n.survival_curve, n.recovery, default_date=AS_OF - pd.Timedelta(days=10))
                 for n in names[:4]]
    full = HeterogeneousBasket(make_basket(defaulted + names[4:]))
    reduced = HeterogeneousBasket(make_basket(names[4:]))
    preset = 4 * 0.6 / 40
    scale = 36 / 40
    date = full.basket.dates[-1]
    for low, high in [(0.09, 0.15), (0.15, 0.3), (0.3, 1.0)]:
        expected = scale * reduced.accumulated_loss(date, (low - preset) / scale, min((high - preset) / scale, 1.0))
        assert full.accumulated_loss(date, low, high) == pytest.approx(expected, abs=1e-8)
    assert full.cumulative(date, [0.1])[0] == pytest.approx(reduced.cumulative(date, [(0.1 - preset) / scale])[0],
                                                            abs=1e-8)


def test_refinance_amortization(mixed_names, make_basket):
    names = mixed_names(10)
    for name in names:
        name.refinance_curve = FlatHazardCurve(AS_OF, 0.1)
    basket = make_basket(names)
    model = SemiAnalyticBasket(basket)
    loss, amortization = expected_refinanced_pool(names, basket.dates)
    for j in (3, len(basket.dates) - 1):
        date = basket.dates[j]
        assert model.amortized_amount(date, 0.0, 1.0) == pytest.approx(amortization[j], abs=1e-8)
        assert model.expected_loss(date) == pytest.approx(loss[j], abs=1e-8)


def test_refinanced_loans_no_longer_default(mixed_names, make_basket, pool_loss):
    names = mixed_names(8)
    basket = make_basket(names)
    date = basket.dates[-1]
    before = SemiAnalyticBasket(basket).expected_loss(date)
    assert before == pytest.approx(pool_loss(names, basket.dates)[-1], abs=1e-8)
    # almost every loan refinances within the first year and leaves the pool
    for name in names:
        name.refinance_curve = FlatHazardCurve(AS_OF, 2.0)
    refinanced = SemiAnalyticBasket(make_basket(names))
    assert refinanced.expected_loss(date) < 0.15 * before
    assert refinanced.expected_loss(date) == \
        pytest.approx(expected_refinanced_pool(names, basket.dates)[0][-1], abs=1e-8)
    assert refinanced.amortized_amount(date, 0.0, 1.0) > 0.95


def test_recovery_dispersion_keeps_the_mean(mixed_names, make_basket):
    names = mixed_names(10)
    plain = SemiAnalyticBasket(make_basket(names))
    dispersed_names = [Name(n.identifier, n.survival_curve, n.recovery, n.principal, recovery_dispersion=0.1)
                       for n in names]
    dispersed = SemiAnalyticBasket(make_basket(dispersed_names))
    date = plain.basket.dates[-1]
    assert dispersed.expected_loss(date) == pytest.approx(plain.expected_loss(date), abs=1e-8)
    assert dispersed.accumulated_loss(date, 0.0, 0.03) != pytest.approx(plain.accumulated_loss(date, 0.0, 0.03),
                                                                        abs=1e-8)


def test_recovery_curve(make_basket, quarterly):
    recovery = RecoveryCurve(AS_OF, [quarterly[0], quarterly[-1]], [0.2, 0.6])
    curve = FlatHazardCurve(AS_OF, 0.03)
    names = [Name(f"R{i}", curve, recovery) for i in range(5)]
    model = SemiAnalyticBasket(make_basket(names, correlation=0.0))
    date = quarterly[-1]
    assert model.expected_loss(date) == pytest.approx(0.4 * (1.0 - curve.survival([date])[0]), abs=1e-8)


def test_multi_factor_expected_loss(mixed_names, make_basket, pool_loss):
    names = mixed_names(12)
    factors = np.vstack([np.full(12, 0.4), np.linspace(-0.3, 0.3, 12)])
    basket = make_basket(names, correlation=factors)
    assert basket.loadings.n_factors == 2
    model = HeterogeneousBasket(basket)
    date = basket.dates[-1]
    assert model.expected_loss(date) == pytest.approx(pool_loss(names, basket.dates)[-1], abs=1e-8)


def test_student_t_expected_loss(mixed_names, make_basket, pool_loss):
    names = mixed_names(12)
    basket = make_basket(names, copula=Copula.student_t(5, 5),
                         settings=BasketSettings(quadrature_points=40))
    model = SemiAnalyticBasket(basket)
    date = basket.dates[-1]
    assert model.expected_loss(date) == pytest.approx(pool_loss(names, basket.dates)[-1], rel=1e-2)
    assert model.cumulative(date, [1.0])[0] == 1.0


def test_threads_give_identical_results(mixed_names, make_basket):
    names = mixed_names()
    serial = SemiAnalyticBasket(make_basket(names))
    threaded = SemiAnalyticBasket(make_basket(names, settings=BasketSettings(quadrature_points=15, max_workers=4)))
    date = serial.basket.dates[-1]
    np.testing.assert_array_equal(threaded.base_loss(date, TRANCHES), serial.base_loss(date, TRANCHES))


def test_adaptive_quadrature_agrees(uniform_names, make_basket):
    names = uniform_names(20, hazard=0.02)
    date = make_basket(names).dates[-1]
    hermite = HeterogeneousBasket(make_basket(names, settings=BasketSettings(quadrature_points=60)))
    adaptive = HeterogeneousBasket(make_basket(names, settings=BasketSettings(adaptive_quadrature=True)))
    np.testing.assert_allclose(adaptive.base_loss(date, TRANCHES), hermite.base_loss(date, TRANCHES), atol=1e-6)


def test_off_grid_date(uniform_names, make_basket):
    basket = make_basket(uniform_names(20, hazard=0.02))
    model = HeterogeneousBasket(basket)
    date = basket.dates[2] + pd.Timedelta(days=10)
    after = model.expected_loss(date)
    assert model.expected_loss(basket.dates[2]) < after < model.expected_loss(basket.dates[3])


def test_set_factor(uniform_names, make_basket):
    model = HeterogeneousBasket(make_basket(uniform_names(30, hazard=0.02), correlation=0.3))
    date = model.basket.dates[-1]
    senior = model.accumulated_loss(date, 0.1, 1.0)
    total = model.expected_loss(date)
    model.set_factor(0.5)
    assert model.accumulated_loss(date, 0.1, 1.0) < senior
    assert model.expected_loss(date) == pytest.approx(total, abs=1e-9)
    model.set_factor(1.0)
    assert model.accumulated_loss(date, 0.1, 1.0) == pytest.approx(senior, abs=1e-12)


def test_loss_distribution_outputs(uniform_basket):
    model = HeterogeneousBasket(uniform_basket)
    levels = uniform_basket.levels
    table = model.calc_loss_distribution(True, uniform_basket.dates[-1])
    assert table.shape == (len(levels), 2)
    np.testing.assert_array_equal(table[:, 0], levels)
    grid = model.loss_distribution(LossDistributionGrid.PROBABILITY)
    assert grid.values.shape == (len(uniform_basket.dates), len(levels))
    np.testing.assert_array_equal(grid.values[:, -1], 1.0)
    losses = model.loss_distribution()
    assert np.all(np.diff(losses.values[-1]) >= -1e-15)
    with pytest.raises(ValidationError):
        model.loss_distribution("density")


@pytest.mark.parametrize("low, high", [(-0.1, 0.2), (0.3, 0.2), (0.5, 1.2)])
def test_invalid_window(uniform_basket, low, high):
    model = UniformBasket(uniform_basket)
    with pytest.raises(ValidationError):
        model.accumulated_loss(uniform_basket.dates[-1], low, high)


def test_large_pool_matches_vasicek(uniform_names, make_basket):
    rho, hazard, recovery = 0.3, 0.02, 0.4
    basket = make_basket(uniform_names(50, hazard=hazard, recovery=recovery), correlation=rho)
    model = LargePoolBasket(basket)
    date = basket.dates[-1]
    q = 1.0 - FlatHazardCurve(AS_OF, hazard).survival([date])[0]
    for x in (0.02, 0.05, 0.1):
        vasicek = norm.cdf((np.sqrt(1 - rho) * norm.ppf(x / (1 - recovery)) - norm.ppf(q)) / np.sqrt(rho))
        assert model.cumulative(date, [x])[0] == pytest.approx(vasicek, abs=1e-7)
    assert model.expected_loss(date) == pytest.approx((1 - recovery) * q, abs=1e-7)
    assert model.cumulative(date, [1.0])[0] == 1.0


def test_large_pool_restrictions(mixed_names, make_basket):
    names = mixed_names(6)
    with pytest.raises(UnsupportedConfigurationError):
        LargePoolBasket(make_basket(names, correlation=np.vstack([np.full(6, 0.3), np.full(6, 0.2)])))
    with pytest.raises(UnsupportedConfigurationError):
        LargePoolBasket(make_basket(names, correlation=np.linspace(-0.3, 0.3, 6)))
    shorted = names + [Name("S", FlatHazardCurve(AS_OF, 0.01), 0.4, principal=-1.0)]
    with pytest.raises(UnsupportedConfigurationError):
        LargePoolBasket(make_basket(shorted))


def test_unsupported_configurations(mixed_names, uniform_names, make_basket):
    mixed = make_basket(mixed_names(6))
    with pytest.raises(UnsupportedConfigurationError):
        UniformBasket(mixed)
    with pytest.raises(UnsupportedConfigurationError):
        create_basket_model("homogeneous", mixed)
    shorted = make_basket(uniform_names(5) + [Name("S", FlatHazardCurve(AS_OF, 0.005), 0.4, principal=-1.0)])
    with pytest.raises(UnsupportedConfigurationError):
        UniformBasket(shorted)
    names = uniform_names(5)
    names[0].refinance_curve = FlatHazardCurve(AS_OF, 0.1)
    with pytest.raises(UnsupportedConfigurationError):
        HeterogeneousBasket(make_basket(names))
    dispersed = [Name("D", FlatHazardCurve(AS_OF, 0.01), 0.4, recovery_dispersion=0.1)]
    with pytest.raises(UnsupportedConfigurationError):
        HeterogeneousBasket(make_basket(dispersed))


def test_basket_validation(uniform_names, quarterly):
    names = uniform_names(5)
    with pytest.raises(ValidationError):
        Basket([], AS_OF, quarterly)
    with pytest.raises(ValidationError):
        Basket(names, AS_OF, quarterly[::-1])
    with pytest.raises(ValidationError):
        Basket(names, quarterly[-1], quarterly)
    with pytest.raises(ValidationError):
        Basket(names, AS_OF, quarterly, levels=[0.5, 0.2])
    with pytest.raises(ValidationError):
        Basket(names, AS_OF, quarterly, correlation=np.ones((3, 3)))
    with pytest.raises(ValidationError):
        BasketSettings(grid_size=0.0)
