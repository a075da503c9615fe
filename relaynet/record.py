# relaynet/record.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .core import Graph


@dataclass(frozen=True)
class FireEvent:
    """
    A single unit firing, captured while a graph drives its waves.
    """

    sample: int
    unit: str
    direction: str
    value: float


class Trace:
    """
    Recording of the firing order on a Graph.

    Responsibilities:
      - Capture every unit firing together with the sample it belongs to.
      - Summarise how many times each unit fired in each direction.
    """

    def __init__(self, graph: Graph) -> None:
        self.graph = graph
        self._events: List[FireEvent] = []
        self._current_sample: int = -1
        self._samples_started = 0
        self._losses: List[float] = []
        self._active = False

    # ------------------------------------------------------------------ control
    def start(self) -> None:
        if self._active:
            return
        self._events.clear()
        self._losses.clear()
        self._samples_started = 0
        self._current_sample = -1
        self.graph.register_event_listener(self._handle_event)
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self.graph.unregister_event_listener(self._handle_event)
        self._active = False

    # ---------------------------------------------------------------- listeners
    def _handle_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind == "unit_fire":
            self._events.append(
                FireEvent(
                    sample=self._current_sample,
                    unit=str(payload["unit"]),
                    direction=str(payload["direction"]),
                    value=float(payload["value"]),
                )
            )
        elif kind == "sample_start":
            self._current_sample = int(payload["index"])
            self._samples_started += 1
        elif kind == "sample_end":
            self._losses.append(float(payload["loss"]))

    # ----------------------------------------------------------------- metadata
    @property
    def events(self) -> Tuple[FireEvent, ...]:
        return tuple(self._events)

    @property
    def losses(self) -> Tuple[float, ...]:
        return tuple(self._losses)

    def fire_counts(self, direction: Optional[str] = None) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event in self._events:
            if direction is not None and event.direction != direction:
                continue
            counts[event.unit] = counts.get(event.unit, 0) + 1
        return counts

    def order(self, direction: str, sample: Optional[int] = None) -> List[str]:
        """Unit names in the order they fired for one direction (and optionally one sample)."""
        return [
            event.unit
            for event in self._events
            if event.direction == direction and (sample is None or event.sample == sample)
        ]

    def summary(self) -> Dict[str, Any]:
        return {
            "samples": self._samples_started,
            "forward": self.fire_counts("forward"),
            "backward": self.fire_counts("backward"),
            "events": len(self._events),
        }


@contextmanager
def record(graph: Graph) -> Iterator[Trace]:
    """
    Context manager to record unit firings on a Graph.

    Usage:
        with relaynet.record(g) as trace:
            g.infer(features)
            g.train(target)
        trace.summary()
    """
    trace = Trace(graph)
    trace.start()
    try:
        yield trace
    finally:
        trace.stop()
