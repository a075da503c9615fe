from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import torch

from .core import DEFAULT_ALPHA, DEFAULT_ETA, Graph
from .data_helper import Sample, SampleSet, load_reference_dataset, load_reference_probe
from .training import train_graph


def build_layered_graph(
    input_size: int,
    hidden_sizes: Sequence[int],
    *,
    eta: float = DEFAULT_ETA,
    alpha: float = DEFAULT_ALPHA,
    seed: Optional[int] = None,
    generator: Optional[torch.Generator] = None,
) -> Graph:
    """
    Build and validate a fully connected layered graph:
      input units → hidden layer(s) → ``head`` compute unit → ``out`` output unit.

    Weights are drawn from ``generator`` (seeded with ``seed`` when given), in
    unit order: hidden layers first, then the head.
    """
    if input_size < 1:
        raise ValueError("input_size must be >= 1")
    if any(int(size) < 1 for size in hidden_sizes):
        raise ValueError("hidden layer sizes must be >= 1")
    generator = generator if generator is not None else torch.Generator()
    if seed is not None:
        generator.manual_seed(seed)

    graph = Graph(generator=generator)
    previous = [graph.input_unit(f"in.{i}") for i in range(input_size)]
    for depth, size in enumerate(hidden_sizes, start=1):
        layer = [
            graph.compute_unit(f"hidden{depth}.{i}", eta=eta, alpha=alpha)
            for i in range(int(size))
        ]
        graph.connect_all(previous, layer)
        previous = layer
    head = graph.compute_unit("head", eta=eta, alpha=alpha)
    out = graph.output_unit("out")
    graph.connect_all(previous, [head])
    graph.connect(head, out)
    return graph.build()


@dataclass(frozen=True)
class ProbeResult:
    prediction: float
    target: float

    @property
    def error(self) -> float:
        return abs(self.prediction - self.target)


@dataclass(frozen=True)
class RunResult:
    seed: int
    probe: ProbeResult
    history: List[float]

    @property
    def last_loss(self) -> float:
        return self.history[-1] if self.history else float("nan")


def evaluate_probe(graph: Graph, probe: Sample) -> ProbeResult:
    """
    Predict a held-out sample without touching the parameters.
    """
    prediction = graph.infer(probe.features)
    return ProbeResult(prediction=prediction, target=probe.target)


def trainer_kwargs_from_config(
    cfg: Mapping[str, Any],
    *,
    val_dataset: Optional[SampleSet] = None,
) -> dict:
    """
    Extract the standard train_graph kwargs from a CONFIG dict.
    """
    required = ("epochs",)
    missing = [key for key in required if key not in cfg]
    if missing:
        raise KeyError(f"Trainer config missing required keys: {', '.join(missing)}")
    train_kwargs = {key: cfg[key] for key in required}
    optional = ("seed", "log_every", "val_every")
    for key in optional:
        if key in cfg:
            train_kwargs[key] = cfg[key]
    if val_dataset is not None:
        train_kwargs["val_dataset"] = val_dataset
    return train_kwargs


@dataclass
class RunConfig:
    """
    Everything needed to reproduce one training run on the reference dataset.

    ``data`` is forwarded to ``load_reference_dataset`` (keys ``variant``,
    ``batch_size``, ``scale``).
    """

    seed: int = 0
    epochs: int = 1000
    eta: float = DEFAULT_ETA
    alpha: float = DEFAULT_ALPHA
    hidden_sizes: Sequence[int] = (8,)
    log_every: int = 0
    data: Dict[str, Any] = field(default_factory=dict)

    def load_dataset(self) -> SampleSet:
        return load_reference_dataset(config=self.data)

    def load_probe(self) -> Sample:
        return load_reference_probe(
            str(self.data.get("variant", "four_feature")),
            scale=self.data.get("scale"),
        )

    def build_graph(self, dataset: SampleSet, *, seed: Optional[int] = None) -> Graph:
        return build_layered_graph(
            dataset.feature_dim,
            self.hidden_sizes,
            eta=self.eta,
            alpha=self.alpha,
            seed=self.seed if seed is None else seed,
        )

    def trainer_kwargs(self, *, seed: Optional[int] = None) -> dict:
        return trainer_kwargs_from_config(
            {
                "epochs": self.epochs,
                "seed": self.seed if seed is None else seed,
                "log_every": self.log_every,
            }
        )

    def train(self, graph: Graph, dataset: SampleSet, *, seed: Optional[int] = None, **overrides: Any) -> List[float]:
        kwargs = self.trainer_kwargs(seed=seed)
        kwargs.update(overrides)
        return train_graph(graph, dataset, **kwargs)


def repeat_reference_runs(config: RunConfig, runs: int = 10) -> List[RunResult]:
    """
    Train ``runs`` independent graphs (seeds ``config.seed + k``) and score each on the probe.
    """
    if runs < 1:
        raise ValueError("runs must be >= 1")
    dataset = config.load_dataset()
    probe = config.load_probe()
    results: List[RunResult] = []
    for k in range(runs):
        seed = config.seed + k
        graph = config.build_graph(dataset, seed=seed)
        history = config.train(graph, dataset, seed=seed)
        results.append(RunResult(seed=seed, probe=evaluate_probe(graph, probe), history=history))
    return results
