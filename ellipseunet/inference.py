"""Run a trained model on a few synthetic test samples."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ellipseunet.data import SegmentationBatcher, with_transforms
from ellipseunet.dataset import EllipseItem, SyntheticEllipseDataset
from ellipseunet.layers import sigmoid
from ellipseunet.model import UNet, UNetConfig
from ellipseunet.training import TrainConfig


@dataclass(frozen=True)
class Prediction:
    """Model outputs for one sample next to its ground truth."""

    fg_fraction: float
    cls_pred: int
    cls_prob: float
    reg_pred: float
    gt_binary: int
    gt_reg: float

    def format(self, index: int) -> str:
        return (
            f"Sample {index:>3} | fg={self.fg_fraction:.3f} "
            f"cls={self.cls_pred}(gt={self.gt_binary},p={self.cls_prob:.3f}) "
            f"reg={self.reg_pred:.2f}(gt={self.gt_reg:.2f})"
        )


def predict(model: UNet, item: EllipseItem) -> Prediction:
    """Run ``model`` on a single item; the model should be in evaluation mode."""
    batch = SegmentationBatcher().batch([item])
    output = model.forward(batch.images)
    fg_fraction = float(sigmoid(output.seg_logits).mean())
    cls_prob = float(sigmoid(output.cls_logits).reshape(-1)[0])
    return Prediction(
        fg_fraction=fg_fraction,
        cls_pred=1 if cls_prob >= 0.5 else 0,
        cls_prob=cls_prob,
        reg_pred=float(output.reg_preds.reshape(-1)[0]),
        gt_binary=int(item.binary_target),
        gt_reg=float(item.regression_target),
    )


def _model_config(artifact: Path) -> UNetConfig:
    config_file = artifact / "config.json"
    if config_file.exists():
        return TrainConfig.load(config_file).model
    return UNetConfig()


def run(artifact_dir, num_samples: int = 10) -> list[Prediction]:
    """Load the model saved in ``artifact_dir`` and print predictions for test samples."""
    if num_samples < 0:
        raise ValueError(f"num_samples must not be negative, got {num_samples!r}")
    artifact = Path(artifact_dir)
    model = UNet.load(artifact / "model", _model_config(artifact))

    dataset = with_transforms(SyntheticEllipseDataset.test(num_samples))
    print(f"Running inference on {num_samples} test samples…\n")

    predictions = []
    for index in range(min(len(dataset), num_samples)):
        prediction = predict(model, dataset[index])
        print(prediction.format(index))
        predictions.append(prediction)
    return predictions