from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import torch

from .core import Graph


@dataclass
class StatRecord:
    """Update sizes for one unit: mean per-batch L2 norm, largest and mean |delta|."""

    name: str
    l2: float
    max_abs: float
    mean_abs: float


@dataclass
class GradientSummary:
    weights: List[StatRecord]
    biases: List[StatRecord]
    batches: int

    def to_text(self, top_k: Optional[int] = None) -> str:
        blocks: List[str] = []
        for title, rows in (("Weight", self.weights), ("Bias", self.biases)):
            if not rows:
                continue
            shown = rows if top_k is None else rows[:top_k]
            blocks.append(f"{title} updates:")
            blocks.extend(
                f"  {rec.name:<20} |l2|={rec.l2:.4e} |max|={rec.max_abs:.4e} mean|d|={rec.mean_abs:.4e}"
                for rec in shown
            )
        return "\n".join(blocks)


class _UpdateBucket:
    """Per-batch update vectors of one unit, reduced on demand."""

    def __init__(self) -> None:
        self.rows: List[torch.Tensor] = []

    def add(self, deltas: Sequence[float]) -> None:
        if deltas:
            self.rows.append(torch.tensor(deltas, dtype=torch.float64))

    def to_record(self, name: str) -> StatRecord:
        if not self.rows:
            return StatRecord(name=name, l2=0.0, max_abs=0.0, mean_abs=0.0)
        # A unit's fan-in is fixed, so every row has the same length.
        updates = torch.stack(self.rows)
        magnitudes = updates.abs()
        return StatRecord(
            name=name,
            l2=float(updates.norm(dim=1).mean()),
            max_abs=float(magnitudes.max()),
            mean_abs=float(magnitudes.mean()),
        )


class GradientWatcher:
    """
    Listen for batch updates on a graph and track how far each compute unit's
    weights and bias move per mini-batch.
    """

    def __init__(self, graph: Graph) -> None:
        self.graph = graph
        self._weight_stats: Dict[str, _UpdateBucket] = {}
        self._bias_stats: Dict[str, _UpdateBucket] = {}
        self._batches = 0
        self.graph.register_event_listener(self._on_event)

    def close(self) -> None:
        self.graph.unregister_event_listener(self._on_event)

    def _on_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind == "batch_end":
            self._batches += 1
            return
        if kind != "batch_applied":
            return
        unit = str(payload["unit"])
        deltas = list(payload.get("weight_deltas", {}).values())
        self._weight_stats.setdefault(unit, _UpdateBucket()).add(deltas)
        self._bias_stats.setdefault(unit, _UpdateBucket()).add([float(payload.get("bias_delta", 0.0))])

    def reset(self) -> None:
        self._weight_stats.clear()
        self._bias_stats.clear()
        self._batches = 0

    def pop_summary(self, *, top_k: Optional[int] = None) -> Optional[GradientSummary]:
        weights = self._consume(self._weight_stats, top_k)
        biases = self._consume(self._bias_stats, top_k)
        batches = self._batches
        self._batches = 0
        if not weights and not biases:
            return None
        return GradientSummary(weights=weights, biases=biases, batches=batches)

    def _consume(
        self,
        store: Dict[str, _UpdateBucket],
        top_k: Optional[int],
    ) -> List[StatRecord]:
        if not store:
            return []
        items = [bucket.to_record(name) for name, bucket in store.items()]
        store.clear()
        items.sort(key=lambda rec: rec.l2, reverse=True)
        if top_k is not None:
            return items[:top_k]
        return items
