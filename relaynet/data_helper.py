"""
Helpers for holding scalar training samples and loading the reference dataset.

Samples live in a `[N, D]` float64 tensor plus `[N]` targets so a single
container can hand out shuffled mini-batches of immutable `Sample` records.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import torch

from .core import SampleShapeError


@dataclass(frozen=True)
class Sample:
    """
    Fixed-length feature vector plus one target scalar.
    """

    features: Tuple[float, ...]
    target: float

    def __post_init__(self) -> None:
        features = tuple(float(value) for value in self.features)
        if not features:
            raise SampleShapeError("A sample needs at least one feature.")
        object.__setattr__(self, "features", features)
        object.__setattr__(self, "target", float(self.target))

    @property
    def size(self) -> int:
        return len(self.features)


@dataclass
class SampleSet:
    """
    Simple container for `[N, D]` features plus `[N]` targets.
    """

    data: torch.Tensor
    targets: torch.Tensor
    batch_size: int
    name: str = "train"
    _samples: Optional[List[Sample]] = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        if self.data.dim() != 2:
            raise SampleShapeError("SampleSet expects data shaped [N, D].")
        if self.targets.dim() != 1 or self.targets.shape[0] != self.data.shape[0]:
            raise SampleShapeError(
                f"SampleSet expects {self.data.shape[0]} targets, got shape {tuple(self.targets.shape)}."
            )
        if self.data.shape[0] == 0 or self.data.shape[1] == 0:
            raise SampleShapeError("SampleSet needs at least one sample with one feature.")
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.data = self.data.to(torch.float64).contiguous()
        self.targets = self.targets.to(torch.float64).contiguous()

    @classmethod
    def from_samples(
        cls,
        samples: Iterable[Union[Sample, Sequence[float]]],
        *,
        batch_size: int,
        name: str = "train",
    ) -> "SampleSet":
        """
        Build from `Sample` records or raw rows laid out as (*features, target).
        """
        rows: List[Sample] = []
        for item in samples:
            if isinstance(item, Sample):
                rows.append(item)
            else:
                values = list(item)
                if len(values) < 2:
                    raise SampleShapeError("A raw row needs at least one feature and a target.")
                rows.append(Sample(tuple(values[:-1]), values[-1]))
        if not rows:
            raise SampleShapeError("SampleSet needs at least one sample.")
        width = rows[0].size
        for idx, row in enumerate(rows):
            if row.size != width:
                raise SampleShapeError(
                    f"Sample {idx} has {row.size} features; expected {width}."
                )
        data = torch.tensor([row.features for row in rows], dtype=torch.float64)
        targets = torch.tensor([row.target for row in rows], dtype=torch.float64)
        return cls(data=data, targets=targets, batch_size=batch_size, name=name)

    @property
    def num_samples(self) -> int:
        return int(self.data.shape[0])

    @property
    def feature_dim(self) -> int:
        return int(self.data.shape[1])

    @property
    def batches_per_epoch(self) -> int:
        return max(1, math.ceil(self.num_samples / self.batch_size))

    def samples(self) -> List[Sample]:
        if self._samples is None:
            self._samples = [
                Sample(tuple(row), target)
                for row, target in zip(self.data.tolist(), self.targets.tolist())
            ]
        return list(self._samples)

    def iter_batches(
        self,
        *,
        shuffle: bool = True,
        generator: Optional[torch.Generator] = None,
    ) -> Iterator[List[Sample]]:
        """
        Yield mini-batches of `Sample`. Shuffling draws from ``generator``.
        """
        rows = self.samples()
        indices = (
            torch.randperm(self.num_samples, generator=generator)
            if shuffle
            else torch.arange(self.num_samples)
        ).tolist()
        for start in range(0, len(indices), self.batch_size):
            yield [rows[idx] for idx in indices[start : start + self.batch_size]]

    def metadata(self) -> Dict[str, Union[str, int]]:
        return {
            "name": self.name,
            "num_samples": self.num_samples,
            "feature_dim": self.feature_dim,
            "batch_size": self.batch_size,
            "batches_per_epoch": self.batches_per_epoch,
        }

    def summary(self) -> str:
        meta = self.metadata()
        return (
            f"{meta['name']} set: {meta['num_samples']} samples × {meta['feature_dim']} features "
            f"(batch={meta['batch_size']}, steps/epoch={meta['batches_per_epoch']})"
        )


# Rows are (*features, target). Both variants share their targets.
_REFERENCE_ROWS: Dict[str, Tuple[Tuple[float, ...], ...]] = {
    "four_feature": (
        (100, 100, 100, 100, 1),
        (100, 100, 10, 100, 1),
        (100, 10, 100, 100, 0),
        (10, 100, 100, 100, 0),
        (10, 10, 10, 10, 1),
        (10, 10, 100, 50, 0),
        (10, 100, 10, 100, 0),
        (90, 90, 50, 100, 1),
        (30, 10, 100, 100, 0),
        (100, 100, 20, 90, 1),
        (70, 100, 10, 100, 1),
        (10, 100, 50, 100, 0),
        (90, 90, 30, 100, 1),
        (50, 50, 100, 100, 0),
        (50, 50, 50, 100, 0),
        (40, 40, 50, 100, 0),
        (80, 70, 70, 100, 1),
    ),
    "three_feature": (
        (100, 100, 100, 1),
        (100, 100, 10, 1),
        (100, 10, 100, 0),
        (10, 100, 100, 0),
        (10, 10, 10, 1),
        (10, 10, 100, 0),
        (10, 100, 10, 0),
        (90, 90, 50, 1),
        (30, 10, 100, 0),
        (100, 100, 20, 1),
        (70, 100, 10, 1),
        (10, 100, 50, 0),
        (90, 90, 30, 1),
        (50, 50, 100, 0),
        (50, 50, 50, 0),
        (40, 40, 50, 0),
        (80, 70, 70, 1),
    ),
}

_REFERENCE_PROBES: Dict[str, Tuple[float, ...]] = {
    "four_feature": (90, 9, 70, 100, 0),
    "three_feature": (90, 9, 70, 0),
}


def load_reference_dataset(
    *,
    variant: str = "four_feature",
    batch_size: int = 5,
    scale: Optional[float] = None,
    config: Optional[Mapping[str, Any]] = None,
    **overrides: Any,
) -> SampleSet:
    """
    Load the 17-sample reference dataset.

    Args:
        variant: ``four_feature`` (default) or ``three_feature``.
        batch_size: Mini-batch size used by the training loop.
        scale: Optional factor applied to every feature (targets stay 0/1).
        config: Optional mapping with defaults for ``variant``, ``batch_size``
            and ``scale``.
        **overrides: Keyword overrides applied last (take precedence over ``config``).
    """
    cfg = _default_reference_config()
    cfg.update({"variant": variant, "batch_size": batch_size, "scale": scale})
    if config is not None:
        cfg.update(dict(config))
    if overrides:
        cfg.update(overrides)

    rows = _reference_rows(str(cfg["variant"]))
    dataset = SampleSet.from_samples(rows, batch_size=int(cfg["batch_size"]), name=str(cfg["variant"]))
    if cfg.get("scale") is not None:
        scale_sample_set(dataset, float(cfg["scale"]))
    return dataset


def load_reference_probe(variant: str = "four_feature", *, scale: Optional[float] = None) -> Sample:
    """
    Held-out sample the reference program predicts after training.
    """
    if variant not in _REFERENCE_PROBES:
        raise KeyError(f"Unknown reference variant {variant!r}; choose from {sorted(_REFERENCE_PROBES)}.")
    *features, target = _REFERENCE_PROBES[variant]
    factor = 1.0 if scale is None else float(scale)
    return Sample(tuple(value * factor for value in features), target)


def scale_sample_set(dataset: SampleSet, factor: float) -> SampleSet:
    """
    Scale all features in-place by ``factor``. Targets are left untouched.
    """
    if factor == 1.0:
        return dataset
    dataset.data.mul_(factor)
    dataset._samples = None
    return dataset


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _default_reference_config() -> Dict[str, Any]:
    return {
        "variant": "four_feature",
        "batch_size": 5,
        "scale": None,
    }


def _reference_rows(variant: str) -> Tuple[Tuple[float, ...], ...]:
    if variant not in _REFERENCE_ROWS:
        raise KeyError(f"Unknown reference variant {variant!r}; choose from {sorted(_REFERENCE_ROWS)}.")
    return _REFERENCE_ROWS[variant]
