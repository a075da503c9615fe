# relaynet/core.py

from __future__ import annotations

import math
from collections import OrderedDict, defaultdict, deque
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import torch

DEFAULT_ETA = 0.01
DEFAULT_ALPHA = 0.9

# Keeps sigmoid() strictly inside (0, 1) once exp() saturates.
_SIGMOID_EPS = 1e-15

EventListener = Callable[[Dict[str, Any]], None]


class TopologyError(ValueError):
    """Neighbour configuration is incomplete, mismatched or cyclic."""


class SampleShapeError(ValueError):
    """A sample's feature count does not match the graph's input units."""


class NumericError(ArithmeticError):
    """An activation sum or loss is not a finite number."""


def sigmoid(value: float) -> float:
    """Logistic function, overflow-free and clamped to the open interval (0, 1)."""
    if value >= 0:
        result = 1.0 / (1.0 + math.exp(-value))
    else:
        z = math.exp(value)
        result = z / (1.0 + z)
    return min(max(result, _SIGMOID_EPS), 1.0 - _SIGMOID_EPS)


def sigmoid_derivative(output: float) -> float:
    """Derivative of the sigmoid expressed through its output y: y * (1 - y)."""
    return output * (1.0 - output)


class Unit:
    """
    Base actor of the network.

    Responsibilities:
      - Hold a name, the current output value and ordered neighbour tuples.
      - Accept forward/backward signals (no-ops here; variants override).
      - Run a variant-specific initialisation hook once neighbours are known.
    """

    kind = "unit"

    def __init__(self, name: str) -> None:
        self.name = name
        self.output: float = 0.0
        self.upstream: Tuple["Unit", ...] = ()
        self.downstream: Tuple["Unit", ...] = ()
        self._configured = False
        self._upstream_ids: frozenset = frozenset()
        self._downstream_ids: frozenset = frozenset()
        self._listener: Optional[EventListener] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @property
    def configured(self) -> bool:
        return self._configured

    def configure(
        self,
        upstream: Iterable["Unit"] = (),
        downstream: Iterable["Unit"] = (),
    ) -> None:
        """
        Set neighbour lists and initialise variant state. Allowed exactly once.
        """
        up = tuple(upstream)
        down = tuple(downstream)
        self._check_configuration(up, down)
        self.upstream = up
        self.downstream = down
        self._upstream_ids = frozenset(map(id, up))
        self._downstream_ids = frozenset(map(id, down))
        self._configured = True
        self._on_configure()

    def receive_forward(self, sender: "Unit", value: float) -> None:
        pass

    def receive_backward(self, sender: "Unit", value: float) -> None:
        pass

    def has_pending(self) -> bool:
        return False

    def clear_pending(self) -> None:
        pass

    # --- Hooks for variants -------------------------------------------------

    def _check_configuration(self, up: Tuple["Unit", ...], down: Tuple["Unit", ...]) -> None:
        if self._configured:
            raise TopologyError(f"Unit {self.name!r} is already configured.")
        for label, units in (("upstream", up), ("downstream", down)):
            if len(set(map(id, units))) != len(units):
                raise TopologyError(f"Unit {self.name!r} lists a {label} neighbour twice.")
            if any(unit is self for unit in units):
                raise TopologyError(f"Unit {self.name!r} cannot be its own {label} neighbour.")
        self._check_neighbour_counts(len(up), len(down))

    def _unconfigure(self) -> None:
        """Forget neighbours and variant state so configure() may run again."""
        self.clear_pending()
        self.upstream = ()
        self.downstream = ()
        self._upstream_ids = frozenset()
        self._downstream_ids = frozenset()
        self._configured = False
        self._on_unconfigure()

    def _check_neighbour_counts(self, n_up: int, n_down: int) -> None:
        pass

    def _on_configure(self) -> None:
        pass

    def _on_unconfigure(self) -> None:
        pass

    def _require_configured(self) -> None:
        if not self._configured:
            raise TopologyError(f"Unit {self.name!r} received a signal before configure().")

    def _require_neighbour(self, sender: "Unit", neighbour_ids: frozenset, label: str) -> None:
        self._require_configured()
        if id(sender) not in neighbour_ids:
            raise TopologyError(
                f"Unit {self.name!r} got a signal from {sender.name!r}, "
                f"which is not one of its {label} neighbours."
            )

    def _emit(self, event: str, **payload: Any) -> None:
        if self._listener is not None:
            self._listener({"event": event, "unit": self.name, **payload})


class InputUnit(Unit):
    """Source unit: pushes an external scalar to every downstream neighbour."""

    kind = "input"

    def _check_neighbour_counts(self, n_up: int, n_down: int) -> None:
        if n_up:
            raise TopologyError(f"Input unit {self.name!r} cannot have upstream neighbours.")
        if not n_down:
            raise TopologyError(f"Input unit {self.name!r} needs at least one downstream neighbour.")

    def infer(self, value: float) -> None:
        self._require_configured()
        value = float(value)
        self.output = value
        self._emit("unit_fire", direction="forward", value=value)
        for unit in self.downstream:
            unit.receive_forward(self, value)


class ComputeUnit(Unit):
    """
    Perceptron with one weight per upstream neighbour, a bias, and momentum state.

    Forward and backward signals are buffered per sender; the unit fires in a
    direction only once every neighbour on that side has reported since the
    last clear. Backward waves accumulate momentum-smoothed update totals that
    reach the live weights only through apply_batch().
    """

    kind = "compute"

    def __init__(
        self,
        name: str,
        *,
        eta: float = DEFAULT_ETA,
        alpha: float = DEFAULT_ALPHA,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        super().__init__(name)
        self.eta = float(eta)
        self.alpha = float(alpha)
        self.generator = generator

        self.weights: Dict[Unit, float] = {}
        self.weight_modify: Dict[Unit, float] = {}
        self.weight_total: Dict[Unit, float] = {}
        self.bias = 0.0
        self.bias_modify = 0.0
        self.bias_total = 0.0

        self._forward_buffer: Dict[Unit, float] = {}
        self._backward_buffer: Dict[Unit, float] = {}

    def _check_neighbour_counts(self, n_up: int, n_down: int) -> None:
        if not n_up:
            raise TopologyError(f"Compute unit {self.name!r} needs at least one upstream neighbour.")
        if not n_down:
            raise TopologyError(f"Compute unit {self.name!r} needs at least one downstream neighbour.")

    def _on_configure(self) -> None:
        draws = torch.rand(len(self.upstream), generator=self.generator, dtype=torch.float64)
        for unit, draw in zip(self.upstream, (draws * 2.0 - 1.0).tolist()):
            self.weights[unit] = draw
            self.weight_modify[unit] = 0.0
            self.weight_total[unit] = 0.0

    def _on_unconfigure(self) -> None:
        self.weights.clear()
        self.weight_modify.clear()
        self.weight_total.clear()
        self.bias = self.bias_modify = self.bias_total = 0.0

    # --- Parameter access ---------------------------------------------------

    def set_parameters(
        self,
        weights: Union[Sequence[float], Dict[Union[str, Unit], float]],
        bias: Optional[float] = None,
    ) -> None:
        """
        Overwrite live weights (in upstream order, or keyed by unit/name) and optionally the bias.
        """
        self._require_configured()
        if isinstance(weights, dict):
            by_name = {unit.name: unit for unit in self.upstream}
            for key, value in weights.items():
                unit = by_name.get(key) if isinstance(key, str) else key
                if unit not in self.weights:
                    raise KeyError(f"{key!r} is not an upstream neighbour of {self.name!r}.")
                self.weights[unit] = float(value)
        else:
            values = list(weights)
            if len(values) != len(self.upstream):
                raise ValueError(
                    f"Expected {len(self.upstream)} weights for {self.name!r}, got {len(values)}."
                )
            for unit, value in zip(self.upstream, values):
                self.weights[unit] = float(value)
        if bias is not None:
            self.bias = float(bias)

    def weight_of(self, neighbour: Union[str, Unit]) -> float:
        if isinstance(neighbour, str):
            for unit in self.upstream:
                if unit.name == neighbour:
                    return self.weights[unit]
            raise KeyError(f"{neighbour!r} is not an upstream neighbour of {self.name!r}.")
        return self.weights[neighbour]

    def has_pending(self) -> bool:
        return bool(self._forward_buffer or self._backward_buffer)

    def clear_pending(self) -> None:
        self._forward_buffer.clear()
        self._backward_buffer.clear()

    # --- Forward wave -------------------------------------------------------

    def receive_forward(self, sender: Unit, value: float) -> None:
        self._require_neighbour(sender, self._upstream_ids, "upstream")
        self._forward_buffer[sender] = value
        # Senders are validated, so a full count means every upstream unit reported.
        if len(self._forward_buffer) == len(self.upstream):
            self._propagate_forward()

    def _propagate_forward(self) -> None:
        try:
            total = sum(self.weights[unit] * self._forward_buffer[unit] for unit in self.upstream)
            total += self.bias
            if not math.isfinite(total):
                raise NumericError(f"Activation sum of {self.name!r} is not finite ({total}).")
            self.output = sigmoid(total)
            self._emit("unit_fire", direction="forward", value=self.output)
            for unit in self.downstream:
                unit.receive_forward(self, self.output)
        finally:
            self._forward_buffer.clear()

    # --- Backward wave ------------------------------------------------------

    def receive_backward(self, sender: Unit, value: float) -> None:
        self._require_neighbour(sender, self._downstream_ids, "downstream")
        self._backward_buffer[sender] = value
        if len(self._backward_buffer) == len(self.downstream):
            self._propagate_backward()

    def _propagate_backward(self) -> None:
        try:
            self._emit("unit_fire", direction="backward", value=sum(self._backward_buffer.values()))
            eta, alpha = self.eta, self.alpha
            for unit in self.upstream:
                upstream_output = unit.output
                total = 0.0
                for sender in self.downstream:
                    delta = self._backward_buffer[sender]
                    self.weight_modify[unit] = eta * delta * upstream_output + alpha * self.weight_modify[unit]
                    self.weight_total[unit] += self.weight_modify[unit]
                    lookahead = self.weights[unit] + eta * self.weight_modify[unit]
                    total += delta * lookahead
                    self.bias_modify = eta * delta + alpha * self.bias_modify
                    self.bias_total += self.bias_modify
                unit.receive_backward(self, sigmoid_derivative(upstream_output) * total)
        finally:
            self._backward_buffer.clear()

    # --- Mini-batch update --------------------------------------------------

    def apply_batch(self, batch_size: int) -> None:
        """
        Fold the accumulated totals into the live weights and reset the totals.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._require_configured()
        weight_deltas: Dict[str, float] = {}
        for unit in self.upstream:
            delta = self.eta * (self.weight_total[unit] / batch_size)
            self.weights[unit] += delta
            weight_deltas[unit.name] = delta
        bias_delta = self.eta * (self.bias_total / batch_size)
        self.bias += bias_delta

        self.bias_total = 0.0
        for unit in self.upstream:
            self.weight_total[unit] = 0.0
        self._emit("batch_applied", weight_deltas=weight_deltas, bias_delta=bias_delta)


class OutputUnit(Unit):
    """Sink that exposes the network output and seeds the backward wave."""

    kind = "output"

    def _check_neighbour_counts(self, n_up: int, n_down: int) -> None:
        if n_up != 1:
            raise TopologyError(
                f"Output unit {self.name!r} needs exactly one upstream neighbour, got {n_up}."
            )
        if n_down:
            raise TopologyError(f"Output unit {self.name!r} cannot have downstream neighbours.")

    def receive_forward(self, sender: Unit, value: float) -> None:
        self._require_neighbour(sender, self._upstream_ids, "upstream")
        self.output = value
        self._emit("unit_fire", direction="forward", value=value)

    def train(self, target: float) -> float:
        """
        Send loss * sigmoid'(output) to the upstream unit and return loss = target - output.
        """
        self._require_configured()
        loss = float(target) - self.output
        if not math.isfinite(loss):
            raise NumericError(f"Loss at {self.name!r} is not finite ({loss}).")
        self._emit("unit_fire", direction="backward", value=loss)
        self.upstream[0].receive_backward(self, loss * sigmoid_derivative(self.output))
        return loss


class Graph:
    """
    Container for units and their connectivity.

    Responsibilities:
      - Own the unit table (name -> unit) and the directed edge list.
      - Configure every unit once from its edges and validate the topology.
      - Drive per-sample forward/backward waves and per-batch updates.
      - Fan out unit events to registered listeners.
    """

    def __init__(self, generator: Optional[torch.Generator] = None) -> None:
        self.generator = generator
        self.units: "OrderedDict[str, Unit]" = OrderedDict()
        self.edges: List[Tuple[Unit, Unit]] = []
        self._built = False
        self._event_listeners: List[EventListener] = []
        self._sample_index = -1

    # --- Construction APIs ---

    def add(self, *units: Unit) -> None:
        """
        Register one or more units with the graph.
        """
        if self._built:
            raise RuntimeError("Cannot add units after build().")
        for unit in units:
            if unit.name in self.units:
                raise ValueError(f"Duplicate unit name {unit.name!r}")
            if unit.configured:
                raise TopologyError(f"Unit {unit.name!r} was configured outside the graph.")
            if unit._listener is not None:
                raise ValueError(f"Unit {unit.name!r} already belongs to another graph.")
            self.units[unit.name] = unit
            unit._listener = self._emit_event

    def input_unit(self, name: str) -> InputUnit:
        unit = InputUnit(name)
        self.add(unit)
        return unit

    def compute_unit(
        self,
        name: str,
        *,
        eta: float = DEFAULT_ETA,
        alpha: float = DEFAULT_ALPHA,
    ) -> ComputeUnit:
        unit = ComputeUnit(name, eta=eta, alpha=alpha, generator=self.generator)
        self.add(unit)
        return unit

    def output_unit(self, name: str) -> OutputUnit:
        unit = OutputUnit(name)
        self.add(unit)
        return unit

    def connect(self, src: Unit, dst: Unit) -> None:
        """
        Connect src → dst. Both units must already be registered.
        """
        if self._built:
            raise RuntimeError("Cannot connect units after build().")
        for unit in (src, dst):
            if self.units.get(unit.name) is not unit:
                raise ValueError(f"Unit {unit.name!r} must be added to the graph before connecting.")
        if any(a is src and b is dst for a, b in self.edges):
            raise TopologyError(f"Edge {src.name!r} → {dst.name!r} already exists.")
        self.edges.append((src, dst))

    def connect_all(self, srcs: Sequence[Unit], dsts: Sequence[Unit]) -> None:
        """Fully connect two layers."""
        for src in srcs:
            for dst in dsts:
                self.connect(src, dst)

    def build(self) -> "Graph":
        """
        Configure every unit from the edge list (insertion order) and validate.

        Neighbour lists are checked for every unit before any is configured. If
        validation fails afterwards all units are unconfigured again, so a
        failed build can be repaired with connect() and retried.
        """
        if self._built:
            raise RuntimeError("Graph is already built.")
        if not self.units:
            raise TopologyError("Graph has no units to build.")
        incoming: Dict[str, List[Unit]] = defaultdict(list)
        outgoing: Dict[str, List[Unit]] = defaultdict(list)
        for src, dst in self.edges:
            outgoing[src.name].append(dst)
            incoming[dst.name].append(src)
        neighbours = {
            name: (tuple(incoming[name]), tuple(outgoing[name])) for name in self.units
        }
        for name, unit in self.units.items():
            unit._check_configuration(*neighbours[name])
        try:
            for name, unit in self.units.items():
                unit.configure(*neighbours[name])
            self.validate()
        except TopologyError:
            for unit in self.units.values():
                unit._unconfigure()
            raise
        self._built = True
        return self

    def validate(self) -> None:
        """
        Check edge symmetry, unit-kind counts and acyclicity. Raises TopologyError.
        """
        inputs = self.inputs
        outputs = [unit for unit in self.units.values() if isinstance(unit, OutputUnit)]
        if not inputs:
            raise TopologyError("Graph needs at least one input unit.")
        if len(outputs) != 1:
            raise TopologyError(f"Graph needs exactly one output unit, found {len(outputs)}.")
        for unit in self.units.values():
            if not unit.configured:
                raise TopologyError(f"Unit {unit.name!r} is not configured.")
            for dst in unit.downstream:
                if self.units.get(dst.name) is not dst:
                    raise TopologyError(f"Unit {dst.name!r} is not part of this graph.")
                if not any(src is unit for src in dst.upstream):
                    raise TopologyError(
                        f"Edge {unit.name!r} → {dst.name!r} is missing from {dst.name!r}'s upstream list."
                    )
            for src in unit.upstream:
                if not any(dst is unit for dst in src.downstream):
                    raise TopologyError(
                        f"Edge {src.name!r} → {unit.name!r} is missing from {src.name!r}'s downstream list."
                    )
        self._check_acyclic()

    def _check_acyclic(self) -> None:
        in_degree = {name: len(unit.upstream) for name, unit in self.units.items()}
        ready = deque(name for name, degree in in_degree.items() if degree == 0)
        visited = 0
        while ready:
            name = ready.popleft()
            visited += 1
            for dst in self.units[name].downstream:
                in_degree[dst.name] -= 1
                if in_degree[dst.name] == 0:
                    ready.append(dst.name)
        if visited != len(self.units):
            raise TopologyError("Graph contains a cycle.")

    # --- Views ---

    @property
    def inputs(self) -> List[InputUnit]:
        return [unit for unit in self.units.values() if isinstance(unit, InputUnit)]

    @property
    def compute_units(self) -> List[ComputeUnit]:
        return [unit for unit in self.units.values() if isinstance(unit, ComputeUnit)]

    @property
    def output(self) -> OutputUnit:
        for unit in self.units.values():
            if isinstance(unit, OutputUnit):
                return unit
        raise TopologyError("Graph has no output unit.")

    def pending_units(self) -> List[str]:
        return [name for name, unit in self.units.items() if unit.has_pending()]

    def reset(self) -> None:
        """Drop signals buffered by an aborted wave."""
        for unit in self.units.values():
            unit.clear_pending()

    def named_parameters(self) -> Iterator[Tuple[str, float]]:
        for unit in self.compute_units:
            for src in unit.upstream:
                yield f"{unit.name}.weight[{src.name}]", unit.weights[src]
            yield f"{unit.name}.bias", unit.bias

    def parameter_snapshot(self) -> Dict[str, float]:
        return dict(self.named_parameters())

    # --- Driving waves ---

    def infer(self, features: Sequence[float]) -> float:
        """
        Run one forward wave and return the output unit's value.
        """
        self._require_built()
        inputs = self.inputs
        values = list(features)
        if len(values) != len(inputs):
            raise SampleShapeError(
                f"Sample has {len(values)} features but the graph has {len(inputs)} input units."
            )
        self._ensure_idle()
        self._sample_index += 1
        self._emit_event({"event": "sample_start", "index": self._sample_index})
        try:
            for unit, value in zip(inputs, values):
                unit.infer(value)
        except NumericError:
            self.reset()
            raise
        return self.output.output

    def train(self, target: float) -> float:
        """
        Run one backward wave from the output unit and return its loss.
        """
        self._require_built()
        self._ensure_idle()
        loss = self.output.train(target)
        self._emit_event({"event": "sample_end", "index": self._sample_index, "loss": loss})
        return loss

    def fit_sample(self, sample: Any) -> float:
        """Forward then backward pass for an object exposing .features and .target."""
        self.infer(sample.features)
        return self.train(sample.target)

    def apply_batch(self, batch_size: int) -> None:
        self._require_built()
        for unit in self.compute_units:
            unit.apply_batch(batch_size)
        self._emit_event({"event": "batch_end", "batch_size": batch_size})

    def _require_built(self) -> None:
        if not self._built:
            raise RuntimeError("Graph.build() must be called before driving signals.")

    def _ensure_idle(self) -> None:
        pending = self.pending_units()
        if pending:
            raise RuntimeError(
                f"Units {', '.join(pending)} still hold signals from an unfinished wave."
            )

    # --- Events ---

    def register_event_listener(self, listener: EventListener) -> None:
        if listener not in self._event_listeners:
            self._event_listeners.append(listener)

    def unregister_event_listener(self, listener: EventListener) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def _emit_event(self, payload: Dict[str, Any]) -> None:
        for listener in list(self._event_listeners):
            listener(payload)
