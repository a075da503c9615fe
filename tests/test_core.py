import math
import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import relaynet  # noqa: E402


class _SpyInput(relaynet.InputUnit):
    """Input unit that remembers the error signals sent back to it."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.received = []

    def receive_backward(self, sender, value):
        self.received.append((sender.name, value))


def _chain(weight: float, bias: float, *, eta: float, alpha: float):
    src = _SpyInput("x")
    unit = relaynet.ComputeUnit("c", eta=eta, alpha=alpha, generator=torch.Generator().manual_seed(0))
    out = relaynet.OutputUnit("y")
    src.configure((), (unit,))
    unit.configure((src,), (out,))
    out.configure((unit,), ())
    unit.set_parameters([weight], bias=bias)
    return src, unit, out


def test_compute_unit_fires_once_every_upstream_reported():
    a, b = relaynet.InputUnit("a"), relaynet.InputUnit("b")
    unit = relaynet.ComputeUnit("c", generator=torch.Generator().manual_seed(0))
    out = relaynet.OutputUnit("out")
    a.configure((), (unit,))
    b.configure((), (unit,))
    unit.configure((a, b), (out,))
    out.configure((unit,), ())
    unit.set_parameters([0.5, -0.25], bias=0.1)

    unit.receive_forward(a, 1.0)
    assert out.output == 0.0
    assert unit.has_pending()

    # Same sender again overwrites; still waiting on b.
    unit.receive_forward(a, 2.0)
    assert out.output == 0.0

    unit.receive_forward(b, 4.0)
    assert out.output == pytest.approx(relaynet.sigmoid(0.5 * 2.0 - 0.25 * 4.0 + 0.1))
    assert not unit.has_pending()

    # Arrival order does not matter.
    unit.receive_forward(b, 4.0)
    unit.receive_forward(a, 2.0)
    assert out.output == pytest.approx(relaynet.sigmoid(0.5 * 2.0 - 0.25 * 4.0 + 0.1))


def test_signals_from_strangers_and_double_configure_are_rejected():
    src, unit, out = _chain(0.5, 0.0, eta=0.1, alpha=0.9)
    stranger = relaynet.InputUnit("stranger")

    with pytest.raises(relaynet.TopologyError):
        unit.receive_forward(stranger, 1.0)
    with pytest.raises(relaynet.TopologyError):
        unit.receive_backward(src, 1.0)
    with pytest.raises(relaynet.TopologyError):
        unit.configure((src,), (out,))

    lonely = relaynet.ComputeUnit("lonely")
    with pytest.raises(relaynet.TopologyError):
        lonely.receive_forward(src, 1.0)


def test_configure_checks_neighbour_counts_per_kind():
    a, b = relaynet.InputUnit("a"), relaynet.InputUnit("b")
    with pytest.raises(relaynet.TopologyError):
        relaynet.OutputUnit("out").configure((a, b), ())
    with pytest.raises(relaynet.TopologyError):
        relaynet.OutputUnit("out").configure((), ())
    with pytest.raises(relaynet.TopologyError):
        relaynet.InputUnit("i").configure((a,), (b,))
    with pytest.raises(relaynet.TopologyError):
        relaynet.ComputeUnit("c").configure((a,), ())
    with pytest.raises(relaynet.TopologyError):
        relaynet.ComputeUnit("c").configure((a, a), (b,))


def test_initial_weights_are_uniform_in_unit_interval():
    generator = torch.Generator().manual_seed(123)
    sources = [relaynet.InputUnit(f"i{k}") for k in range(64)]
    sink = relaynet.OutputUnit("out")
    unit = relaynet.ComputeUnit("c", generator=generator)
    unit.configure(sources, (sink,))

    values = [unit.weights[src] for src in sources]
    assert all(-1.0 <= value <= 1.0 for value in values)
    assert min(values) < 0.0 < max(values)
    assert all(unit.weight_modify[src] == 0.0 for src in sources)
    assert all(unit.weight_total[src] == 0.0 for src in sources)
    assert unit.bias == unit.bias_modify == unit.bias_total == 0.0


def test_sigmoid_stays_inside_open_interval():
    for x in (-1e308, -1000.0, -50.0, -1.0, 0.0, 1.0, 50.0, 1000.0, 1e308):
        y = relaynet.sigmoid(x)
        assert 0.0 < y < 1.0
    assert relaynet.sigmoid(0.0) == pytest.approx(0.5)


def test_sigmoid_derivative_matches_numerical_slope():
    h = 1e-5
    for x in torch.linspace(-10.0, 10.0, 201).tolist():
        numeric = (relaynet.sigmoid(x + h) - relaynet.sigmoid(x - h)) / (2 * h)
        analytic = relaynet.sigmoid_derivative(relaynet.sigmoid(x))
        assert abs(numeric - analytic) < 1e-6


def test_backward_wave_accumulates_totals_without_touching_weights():
    eta, alpha = 0.1, 0.9
    src, unit, out = _chain(0.5, 0.0, eta=eta, alpha=alpha)

    src.infer(1.0)
    y = relaynet.sigmoid(0.5)
    assert out.output == pytest.approx(y)

    loss = out.train(1.0)
    assert loss == pytest.approx(1.0 - y)
    delta = loss * y * (1.0 - y)

    assert unit.weights[src] == 0.5
    assert unit.weight_modify[src] == pytest.approx(eta * delta)
    assert unit.weight_total[src] == pytest.approx(eta * delta)
    assert unit.bias_total == pytest.approx(eta * delta)
    assert not unit.has_pending()

    lookahead = 0.5 + eta * (eta * delta)
    assert src.received == [("c", pytest.approx(relaynet.sigmoid_derivative(1.0) * delta * lookahead))]


def test_apply_batch_averages_totals_and_resets_them():
    eta, alpha = 0.1, 0.9
    src, unit, out = _chain(0.5, 0.0, eta=eta, alpha=alpha)
    src.infer(1.0)
    out.train(1.0)
    y = relaynet.sigmoid(0.5)
    delta = (1.0 - y) * y * (1.0 - y)
    modify_before = unit.weight_modify[src]

    unit.apply_batch(2)
    assert unit.weights[src] == pytest.approx(0.5 + eta * (eta * delta) / 2)
    assert unit.bias == pytest.approx(eta * (eta * delta) / 2)
    assert unit.weight_total[src] == 0.0
    assert unit.bias_total == 0.0
    # Momentum state survives the batch boundary.
    assert unit.weight_modify[src] == modify_before

    weights_after = dict(unit.weights)
    bias_after = unit.bias
    unit.apply_batch(2)
    assert unit.weights == weights_after
    assert unit.bias == bias_after

    with pytest.raises(ValueError):
        unit.apply_batch(0)


def test_momentum_carries_across_samples_within_a_batch():
    eta, alpha = 0.2, 0.9
    src, unit, out = _chain(-0.3, 0.1, eta=eta, alpha=alpha)

    src.infer(0.8)
    out.train(0.0)
    first_modify = unit.weight_modify[src]
    first_bias_modify = unit.bias_modify

    # Live weights are unchanged, so the second identical sample sees the same delta.
    src.infer(0.8)
    out.train(0.0)
    assert unit.weight_modify[src] == pytest.approx(first_modify * (1 + alpha))
    assert unit.weight_total[src] == pytest.approx(first_modify * (2 + alpha))
    assert unit.bias_total == pytest.approx(first_bias_modify * (2 + alpha))


def test_error_signal_uses_lookahead_weight_through_hidden_layer():
    eta, alpha = 0.5, 0.9
    x = _SpyInput("x")
    hidden = relaynet.ComputeUnit("h", eta=eta, alpha=alpha)
    head = relaynet.ComputeUnit("c", eta=eta, alpha=alpha)
    out = relaynet.OutputUnit("y")
    x.configure((), (hidden,))
    hidden.configure((x,), (head,))
    head.configure((hidden,), (out,))
    out.configure((head,), ())
    hidden.set_parameters([0.4], bias=0.0)
    head.set_parameters([-0.7], bias=0.2)

    x.infer(0.5)
    h_out = relaynet.sigmoid(0.4 * 0.5)
    c_out = relaynet.sigmoid(-0.7 * h_out + 0.2)
    assert hidden.output == pytest.approx(h_out)
    assert out.output == pytest.approx(c_out)

    out.train(1.0)
    delta_c = (1.0 - c_out) * c_out * (1.0 - c_out)
    modify_c = eta * delta_c * h_out
    err_h = h_out * (1.0 - h_out) * delta_c * (-0.7 + eta * modify_c)
    modify_h = eta * err_h * 0.5
    err_x = 0.5 * (1.0 - 0.5) * err_h * (0.4 + eta * modify_h)

    assert head.weight_total[hidden] == pytest.approx(modify_c)
    assert hidden.weight_total[x] == pytest.approx(modify_h)
    assert hidden.bias_total == pytest.approx(eta * err_h)
    assert x.received == [("h", pytest.approx(err_x))]


def test_bias_accumulates_once_per_upstream_downstream_pair():
    eta, alpha = 0.1, 0.0
    a, b = relaynet.InputUnit("a"), relaynet.InputUnit("b")
    unit = relaynet.ComputeUnit("c", eta=eta, alpha=alpha)
    out = relaynet.OutputUnit("out")
    a.configure((), (unit,))
    b.configure((), (unit,))
    unit.configure((a, b), (out,))
    out.configure((unit,), ())
    unit.set_parameters({"a": 0.2, "b": 0.3}, bias=0.0)

    a.infer(1.0)
    b.infer(1.0)
    y = relaynet.sigmoid(0.5)
    out.train(0.0)
    delta = (0.0 - y) * y * (1.0 - y)
    # Without momentum the bias modify is recomputed (not summed) for each upstream unit.
    assert unit.bias_modify == pytest.approx(eta * delta)
    assert unit.bias_total == pytest.approx(2 * eta * delta)


def test_output_unit_seeds_backward_wave_with_loss():
    src, unit, out = _chain(0.0, 0.0, eta=0.1, alpha=0.9)
    src.infer(3.0)
    assert out.output == pytest.approx(0.5)
    assert out.train(0.25) == pytest.approx(-0.25)

    with pytest.raises(relaynet.NumericError):
        out.train(math.nan)


def _run_all():
    tests = [
        test_compute_unit_fires_once_every_upstream_reported,
        test_signals_from_strangers_and_double_configure_are_rejected,
        test_configure_checks_neighbour_counts_per_kind,
        test_initial_weights_are_uniform_in_unit_interval,
        test_sigmoid_stays_inside_open_interval,
        test_sigmoid_derivative_matches_numerical_slope,
        test_backward_wave_accumulates_totals_without_touching_weights,
        test_apply_batch_averages_totals_and_resets_them,
        test_momentum_carries_across_samples_within_a_batch,
        test_error_signal_uses_lookahead_weight_through_hidden_layer,
        test_bias_accumulates_once_per_upstream_downstream_pair,
        test_output_unit_seeds_backward_wave_with_loss,
    ]
    for test in tests:
        name = test.__name__
        print(f"Running {name}...")
        test()
        print(f"✓ {name}")
    print("All tests passed ✔")


if __name__ == "__main__":
    _run_all()
