from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

import torch

from .core import Graph, SampleShapeError
from .data_helper import SampleSet

if TYPE_CHECKING:
    from .diagnostics import GradientWatcher


@dataclass(frozen=True)
class TrainLoopConfig:
    epochs: int
    log_every: int = 0
    val_every: int = 1

    def __post_init__(self) -> None:
        if self.epochs < 1:
            raise ValueError("epochs must be >= 1")
        if self.log_every < 0:
            raise ValueError("log_every must be >= 0")


@dataclass
class EpochStats:
    avg_loss: float
    final_loss: float
    batches: int


class Trainer:
    def __init__(
        self,
        graph: Graph,
        dataset: SampleSet,
        config: TrainLoopConfig,
        *,
        generator: Optional[torch.Generator] = None,
        val_dataset: Optional[SampleSet] = None,
        grad_monitor: Optional["GradientWatcher"] = None,
        grad_summary_top_k: Optional[int] = 5,
    ) -> None:
        self.graph = graph
        self.dataset = dataset
        self.config = config
        self.generator = generator if generator is not None else torch.Generator()
        self.val_dataset = val_dataset
        self.grad_monitor = grad_monitor
        self.grad_summary_top_k = grad_summary_top_k
        for candidate in (dataset, val_dataset):
            if candidate is not None and candidate.feature_dim != len(graph.inputs):
                raise SampleShapeError(
                    f"{candidate.name} set has {candidate.feature_dim} features but the graph has "
                    f"{len(graph.inputs)} input units."
                )

    def run(self, *, seed: Optional[int] = None) -> List[float]:
        if seed is not None:
            self.generator.manual_seed(seed)
        history: List[float] = []
        for epoch in range(1, self.config.epochs + 1):
            stats = self._train_epoch(epoch)
            history.append(stats.avg_loss)
            if self._should_log(epoch):
                self._log_epoch(epoch, stats)
            if (
                self.val_dataset is not None
                and self.config.val_every > 0
                and (epoch % self.config.val_every) == 0
                and self._should_log(epoch)
            ):
                self._log_validation(epoch)
        return history

    def _train_epoch(self, epoch: int) -> EpochStats:
        total_abs = 0.0
        count = 0
        last_batch_loss = 0.0
        steps = 0

        for step, batch in enumerate(
            self.dataset.iter_batches(shuffle=True, generator=self.generator), start=1
        ):
            batch_abs = 0.0
            for sample in batch:
                loss = self.graph.fit_sample(sample)
                batch_abs += abs(loss)
            # The configured size is used even for a short final batch.
            self.graph.apply_batch(self.dataset.batch_size)

            total_abs += batch_abs
            count += len(batch)
            last_batch_loss = batch_abs / len(batch)
            steps += 1

            if self._should_log(epoch) and (
                step % self.config.log_every == 0 or step == self.dataset.batches_per_epoch
            ):
                print(
                    f"[epoch {epoch}] step {step}/{self.dataset.batches_per_epoch} "
                    f"loss={total_abs / count:.4f}"
                )
                self._log_gradient_summary()

        return EpochStats(avg_loss=total_abs / max(1, count), final_loss=last_batch_loss, batches=steps)

    def evaluate(self, dataset: Optional[SampleSet] = None) -> float:
        """
        Mean absolute loss over ``dataset`` using forward waves only.
        """
        dataset = dataset if dataset is not None else self.dataset
        total = 0.0
        for sample in dataset.samples():
            prediction = self.graph.infer(sample.features)
            total += abs(sample.target - prediction)
        return total / dataset.num_samples

    def _should_log(self, epoch: int) -> bool:
        return self.config.log_every > 0 and epoch % self.config.log_every == 0

    def _log_epoch(self, epoch: int, stats: EpochStats) -> None:
        print(f"Epoch {epoch} mean |loss|: {stats.avg_loss:.4f} last batch: {stats.final_loss:.4f}")

    def _log_validation(self, epoch: int) -> None:
        assert self.val_dataset is not None
        val_loss = self.evaluate(self.val_dataset)
        print(f"[val after epoch {epoch}] mean |loss|={val_loss:.4f}")

    def _log_gradient_summary(self) -> None:
        if self.grad_monitor is None:
            return
        summary = self.grad_monitor.pop_summary(top_k=self.grad_summary_top_k)
        if summary is None:
            return
        text = summary.to_text()
        if not text:
            return
        for line in text.splitlines():
            print(f"    {line}")


def train_graph(
    graph: Graph,
    dataset: SampleSet,
    *,
    epochs: int,
    log_every: int = 0,
    seed: Optional[int] = None,
    generator: Optional[torch.Generator] = None,
    val_dataset: Optional[SampleSet] = None,
    val_every: int = 1,
    grad_monitor: Optional["GradientWatcher"] = None,
    grad_summary_top_k: Optional[int] = 5,
) -> List[float]:
    """
    Train a graph on a SampleSet with per-sample waves and per-batch updates.

    Returns a list of mean absolute loss values per epoch.
    """
    config = TrainLoopConfig(epochs=epochs, log_every=log_every, val_every=val_every)
    trainer = Trainer(
        graph,
        dataset,
        config,
        generator=generator,
        val_dataset=val_dataset,
        grad_monitor=grad_monitor,
        grad_summary_top_k=grad_summary_top_k,
    )
    return trainer.run(seed=seed)
