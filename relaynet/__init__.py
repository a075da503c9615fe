# relaynet/__init__.py

from .core import (
    DEFAULT_ALPHA,
    DEFAULT_ETA,
    Graph,
    Unit,
    InputUnit,
    ComputeUnit,
    OutputUnit,
    TopologyError,
    SampleShapeError,
    NumericError,
    sigmoid,
    sigmoid_derivative,
)

from .record import record, Trace, FireEvent
from .data_helper import (
    Sample,
    SampleSet,
    load_reference_dataset,
    load_reference_probe,
    scale_sample_set,
)
from .training import TrainLoopConfig, Trainer, train_graph
from .recipes import (
    build_layered_graph,
    evaluate_probe,
    repeat_reference_runs,
    trainer_kwargs_from_config,
    ProbeResult,
    RunConfig,
    RunResult,
)
from .diagnostics import GradientWatcher, GradientSummary

__all__ = [
    "DEFAULT_ALPHA",
    "DEFAULT_ETA",
    "Graph",
    "Unit",
    "InputUnit",
    "ComputeUnit",
    "OutputUnit",
    "TopologyError",
    "SampleShapeError",
    "NumericError",
    "sigmoid",
    "sigmoid_derivative",
    "record",
    "Trace",
    "FireEvent",
    "Sample",
    "SampleSet",
    "load_reference_dataset",
    "load_reference_probe",
    "scale_sample_set",
    "TrainLoopConfig",
    "Trainer",
    "train_graph",
    "build_layered_graph",
    "evaluate_probe",
    "repeat_reference_runs",
    "trainer_kwargs_from_config",
    "ProbeResult",
    "RunConfig",
    "RunResult",
    "GradientWatcher",
    "GradientSummary",
]
