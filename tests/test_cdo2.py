import numpy as np
import pytest

from cdoloss import (CDO2Basket, HeterogeneousBasket, Name, UnsupportedConfigurationError, ValidationError,
                     create_basket_model)
from cdoloss.simulators import MonteCarloOptions

# inner tranche values of 10-name pools at recovery 0.4 fall on one outer grid
INNER = [(0.0, 0.12), (0.06, 0.30)]
ATTACHMENTS = [a for a, _ in INNER]
DETACHMENTS = [d for _, d in INNER]


def inner_reference(names, rows, make_basket, date):
    """Notional-weighted expected inner tranche losses, pool by pool."""
    values = []
    notionals = []
    for row, (low, high) in zip(rows, INNER):
        pool = [Name(n.identifier, n.survival_curve, n.recovery, principal=p) for n, p in zip(names, row) if p != 0]
        model = HeterogeneousBasket(make_basket(pool))
        values.append(model.accumulated_loss(date, low, high))
        notionals.append(row.sum())
    notionals = np.array(notionals)
    total = (notionals * (np.array(DETACHMENTS) - np.array(ATTACHMENTS))).sum()
    return float((notionals * np.array(values)).sum() / total)


def test_single_inner_pool_is_the_basket(uniform_names, make_basket):
    basket = make_basket(uniform_names(20, hazard=0.03))
    outer = CDO2Basket(basket, np.ones((1, 20)), [0.0], [1.0])
    plain = HeterogeneousBasket(basket)
    date = basket.dates[-1]
    assert outer.expected_loss(date) == pytest.approx(plain.expected_loss(date), abs=1e-12)
    assert outer.accumulated_loss(date, 0.0, 0.06) == pytest.approx(plain.accumulated_loss(date, 0.0, 0.06),
                                                                      abs=1e-12)


def test_disjoint_pools(uniform_names, make_basket):
    names = uniform_names(20, hazard=0.03)
    rows = np.zeros((2, 20))
    rows[0, :10] = 1.0
    rows[1, 10:] = 1.0
    basket = make_basket(names)
    outer = create_basket_model("cdo2", basket, principals=rows, attachments=ATTACHMENTS,
                                detachments=DETACHMENTS)
    assert outer.disjoint
    assert outer.total == pytest.approx(10 * 0.12 + 10 * 0.24)
    date = basket.dates[-1]
    assert outer.expected_loss(date) == pytest.approx(inner_reference(names, rows, make_basket, date), abs=1e-10)
    assert outer.cumulative(date, [1.0])[0] == 1.0
    assert outer.standard_error(date) == 0.0


def test_amortization_of_inner_tranches(uniform_names, make_basket):
    names = uniform_names(20, hazard=0.03)
    basket = make_basket(names)
    outer = CDO2Basket(basket, np.ones((1, 20)), [0.0], [1.0])
    plain = HeterogeneousBasket(basket)
    date = basket.dates[-1]
    assert outer.amortized_amount(date, 0.0, 1.0) == pytest.approx(plain.amortized_amount(date, 0.0, 1.0),
                                                                     abs=1e-12)


def test_overlapping_pools_need_simulation(mixed_names, make_basket):
    names = mixed_names(12)
    rows = np.zeros((2, 12))
    rows[0, :8] = 1.0
    rows[1, 4:] = 1.0
    basket = make_basket(names)
    with pytest.raises(UnsupportedConfigurationError):
        CDO2Basket(basket, rows, ATTACHMENTS, DETACHMENTS)
    outer = CDO2Basket(basket, rows, ATTACHMENTS, DETACHMENTS, method="monte_carlo",
                       options=MonteCarloOptions(sample_size=3000, seed=4))
    assert not outer.disjoint
    date = basket.dates[-1]
    error = outer.standard_error(date)
    assert error > 0.0
    reference = inner_reference(names, rows, make_basket, date)
    assert abs(outer.expected_loss(date) - reference) < 5.0 * error + 1e-9


@pytest.mark.parametrize("rows, attachments, detachments", [
    (np.ones((2, 5)), [0.0], [0.1]),
    (np.ones((1, 4)), [0.0], [0.1]),
    (np.ones((1, 6)), [0.2], [0.1]),
    (np.zeros((1, 6)), [0.0], [0.1]),
])
def test_validation(uniform_names, make_basket, rows, attachments, detachments):
    basket = make_basket(uniform_names(6))
    with pytest.raises(ValidationError):
        CDO2Basket(basket, rows, attachments, detachments)


def test_unknown_method(uniform_names, make_basket):
    with pytest.raises(ValidationError):
        CDO2Basket(make_basket(uniform_names(4)), np.ones((1, 4)), [0.0], [0.1], method="exact")
