"""Training: Adam optimiser, experiment configuration, data loading and the training run."""

from __future__ import annotations

import json
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

import numpy as np

from ellipseunet.data import ItemDataset, SegmentationBatch, SegmentationBatcher, with_transforms
from ellipseunet.dataset import EllipseItem, SyntheticEllipseDataset
from ellipseunet.layers import Parameter
from ellipseunet.model import UNet, UNetConfig

LEARNING_RATE = 1e-3
"""Learning rate used by :func:`run`."""


def _require_mapping(data: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data


@dataclass
class AdamConfig:
    """Hyperparameters of the Adam optimiser."""

    beta_1: float = 0.9
    beta_2: float = 0.999
    epsilon: float = 1e-5
    weight_decay: float | None = None

    def __post_init__(self) -> None:
        for name in ("beta_1", "beta_2"):
            value = getattr(self, name)
            if not 0.0 <= value < 1.0:
                raise ValueError(f"{name} must lie in [0, 1), got {value!r}")
        if self.epsilon <= 0.0:
            raise ValueError(f"epsilon must be positive, got {self.epsilon!r}")
        if self.weight_decay is not None and self.weight_decay < 0.0:
            raise ValueError(f"weight_decay must not be negative, got {self.weight_decay!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "beta_1": self.beta_1,
            "beta_2": self.beta_2,
            "epsilon": self.epsilon,
            "weight_decay": self.weight_decay,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AdamConfig:
        data = _require_mapping(data, "optimizer config")
        defaults = cls()
        return cls(
            beta_1=float(data.get("beta_1", defaults.beta_1)),
            beta_2=float(data.get("beta_2", defaults.beta_2)),
            epsilon=float(data.get("epsilon", defaults.epsilon)),
            weight_decay=data.get("weight_decay", defaults.weight_decay),
        )


class Adam:
    """Adam with bias correction and optional L2 weight decay."""

    def __init__(
        self,
        params: Iterable[Parameter],
        lr: float = LEARNING_RATE,
        config: AdamConfig | None = None,
    ) -> None:
        if lr <= 0.0:
            raise ValueError(f"learning rate must be positive, got {lr!r}")
        self.params = list(params)
        self.lr = lr
        self.config = config if config is not None else AdamConfig()
        self.steps = 0
        self._moments = [
            (np.zeros_like(p.value, dtype=np.float64), np.zeros_like(p.value, dtype=np.float64))
            for p in self.params
        ]

    def step(self) -> None:
        """Update every parameter from its accumulated gradient."""
        cfg = self.config
        self.steps += 1
        corr1 = 1.0 - cfg.beta_1**self.steps
        corr2 = 1.0 - cfg.beta_2**self.steps
        for param, (m, v) in zip(self.params, self._moments):
            grad = np.asarray(param.grad, dtype=np.float64)
            if cfg.weight_decay:
                grad = grad + cfg.weight_decay * param.value
            m[...] = cfg.beta_1 * m + (1.0 - cfg.beta_1) * grad
            v[...] = cfg.beta_2 * v + (1.0 - cfg.beta_2) * grad * grad
            update = self.lr * (m / corr1) / (np.sqrt(v / corr2) + cfg.epsilon)
            param.value = (param.value - update).astype(param.value.dtype)

    def zero_grad(self) -> None:
        for param in self.params:
            param.zero_grad()


_SCALAR_FIELDS = {
    "num_epochs": 0,
    "train_size": 0,
    "valid_size": 0,
    "batch_size": 1,
    "num_workers": 0,
    "seed": 0,
}


@dataclass
class TrainConfig:
    """Experiment configuration, stored as JSON next to the trained model."""

    num_epochs: int = 5
    train_size: int = 200
    valid_size: int = 50
    batch_size: int = 4
    num_workers: int = 2
    seed: int = 42
    optimizer: AdamConfig = field(default_factory=AdamConfig)
    model: UNetConfig = field(default_factory=UNetConfig)

    def __post_init__(self) -> None:
        for name, minimum in _SCALAR_FIELDS.items():
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
                raise ValueError(f"{name} must be an integer >= {minimum}, got {value!r}")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {name: getattr(self, name) for name in _SCALAR_FIELDS}
        data["optimizer"] = self.optimizer.to_dict()
        data["model"] = self.model.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TrainConfig:
        data = _require_mapping(data, "training config")
        for key in ("optimizer", "model"):
            if key not in data:
                raise ValueError(f"missing field {key!r} in training config")
        scalars = {name: data[name] for name in _SCALAR_FIELDS if name in data}
        return cls(
            optimizer=AdamConfig.from_dict(data["optimizer"]),
            model=UNetConfig.from_dict(_require_mapping(data["model"], "model config")),
            **scalars,
        )

    def save(self, path) -> None:
        Path(path).write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path) -> TrainConfig:
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


class DataLoader:
    """Iterate over a dataset in mini-batches, optionally shuffled with a seed.

    The last batch may be smaller than ``batch_size``. With ``num_workers`` above
    one, items of a batch are fetched on a thread pool.
    """

    def __init__(
        self,
        dataset: ItemDataset,
        batcher: SegmentationBatcher,
        batch_size: int = 1,
        *,
        shuffle: int | None = None,
        num_workers: int = 0,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size!r}")
        if num_workers < 0:
            raise ValueError(f"num_workers must not be negative, got {num_workers!r}")
        self.dataset = dataset
        self.batcher = batcher
        self.batch_size = batch_size
        self.num_workers = num_workers
        self._rng = np.random.default_rng(shuffle) if shuffle is not None else None

    def _fetch(self, index) -> EllipseItem:
        item = self.dataset.get(int(index))
        if item is None:
            raise IndexError(f"dataset has no item {int(index)}")
        return item

    def _chunks(self) -> list[np.ndarray]:
        n = len(self.dataset)
        order = self._rng.permutation(n) if self._rng is not None else np.arange(n)
        return [order[start : start + self.batch_size] for start in range(0, n, self.batch_size)]

    def __iter__(self) -> Iterator[SegmentationBatch]:
        chunks = self._chunks()
        if self.num_workers > 1:
            with ThreadPoolExecutor(max_workers=self.num_workers) as pool:
                for chunk in chunks:
                    yield self.batcher.batch(pool.map(self._fetch, chunk))
        else:
            for chunk in chunks:
                yield self.batcher.batch(self._fetch(i) for i in chunk)

    def __len__(self) -> int:
        return -(-len(self.dataset) // self.batch_size)


def _format_loss(losses: list[float]) -> str:
    return f"{sum(losses) / len(losses):.4f}" if losses else "n/a"


def run(artifact_dir, config_path=None) -> UNet:
    """Train a UNet on synthetic data and write config, checkpoints and model to ``artifact_dir``.

    The artifact directory is emptied first. Returns the trained model.
    """
    artifact = Path(artifact_dir)

    if config_path is not None:
        print(f"Loading config from {config_path}")
        config = TrainConfig.load(config_path)
    else:
        config = TrainConfig()

    shutil.rmtree(artifact, ignore_errors=True)
    artifact.mkdir(parents=True, exist_ok=True)
    config.save(artifact / "config.json")

    model = config.model.init(config.seed)

    train_dataset = with_transforms(SyntheticEllipseDataset.train(config.train_size))
    valid_dataset = with_transforms(SyntheticEllipseDataset.validation(config.valid_size))
    print(f"Train dataset size: {len(train_dataset)}")
    print(f"Valid dataset size: {len(valid_dataset)}")

    train_loader = DataLoader(
        train_dataset,
        SegmentationBatcher(),
        config.batch_size,
        shuffle=config.seed,
        num_workers=config.num_workers,
    )
    valid_loader = DataLoader(
        valid_dataset,
        SegmentationBatcher(),
        config.batch_size,
        num_workers=config.num_workers,
    )

    optimizer = Adam(model.parameters(), LEARNING_RATE, config.optimizer)
    checkpoints = artifact / "checkpoint"

    for epoch in range(1, config.num_epochs + 1):
        model.set_training(True)
        train_losses = []
        for batch in train_loader:
            optimizer.zero_grad()
            train_losses.append(model.train_step(batch).loss)
            optimizer.step()

        model.set_training(False)
        valid_losses = [model.forward_step(batch).loss for batch in valid_loader]
        print(
            f"Epoch {epoch}/{config.num_epochs} | train loss {_format_loss(train_losses)}"
            f" | valid loss {_format_loss(valid_losses)}"
        )
        model.save(checkpoints / f"model-{epoch}")

    model.set_training(False)
    model.save(artifact / "model")
    print(f"Training complete – artifacts written to {artifact}/")
    return model