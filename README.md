# ellipseunet

A compact UNet-like segmentation model trained on a synthetic dataset of
randomly drawn ellipses. It is written in plain NumPy, with explicit forward
and backward passes, and uses Pillow to resize images.

## The data

`ellipseunet.dataset.SyntheticEllipseDataset` makes its samples on demand.
Each one is a random RGB image, 80 to 119 pixels per side, with eight filled
ellipses drawn over it in order of rising intensity. The sixth ellipse gives
the ground-truth mask. Each sample, an `EllipseItem`, also carries:

- `binary_target`: 1 when the mean intensity inside the mask is below 128, else 0;
- `regression_target`: the mean inside the mask minus the mean of the whole image.

Images are resized to 96 × 96 with Lanczos filtering and masks with
nearest-neighbour. Images are stored channels-first as `(3, 96, 96)` and masks
as `(1, 96, 96)`.

Sample `i` is always generated from the seed `base_seed + i`, so it does not
depend on the order of access. Generated samples are cached. The splits use
these base seeds:

| Split | Constructor | Base seed |
|-------|-------------|-----------|
| train | `SyntheticEllipseDataset.train(size)` | 0 |
| validation | `SyntheticEllipseDataset.validation(size)` | 1000000 |
| test | `SyntheticEllipseDataset.test(size)` | 2000000 |

`dataset.get(i)` returns `None` when `i` is out of range. `dataset[i]` raises
`IndexError` instead.

`ellipseunet.data.with_transforms(dataset)` wraps a dataset with two transforms:

- `NormalizeTransform` scales image values to [0, 1].
- `FlipHorizontalTransform` then mirrors image and mask when a hash of the
  first eight pixel values is odd. The same sample is therefore always treated
  the same way.

`SegmentationBatcher().batch(items)` stacks items into a `SegmentationBatch`.
It has the fields `images`, `masks`, `binary_targets` and `regression_targets`.

## The model

`ellipseunet.model.UNet` has these parts:

- two encoder stages, each a `ConvBlock` (conv → batch norm → ReLU, twice);
- a bottleneck;
- two decoder stages with nearest-neighbour 2× upsampling and skip connections;
- a 1×1 segmentation head;
- a classification head and a regression head on globally pooled bottleneck features.

The input height and width must be divisible by 4. `UNetConfig(base_channels=32)`
sets the width of the first stage; the deeper stages use twice and four times
that width.

`UNet.forward_step(batch)` returns a `StepOutput`. Its loss is

    BCE(segmentation) + BCE(classification) + MSE(regression)

`UNet.train_step(batch)` returns the same and also accumulates gradients into
`UNet.parameters()`. Weights and batch-norm statistics are stored with
`UNet.save(path)` as a `.npz` file. `UNet.load(path, config)` reads them back and
returns the model in evaluation mode.

The building blocks live in `ellipseunet.layers`: `Conv2d`, `BatchNorm2d`, `ReLU`,
`MaxPool2d`, `AdaptiveAvgPool2d`, `Linear`, `upsample_2x`, `sigmoid` and
`binary_cross_entropy_with_logits`.

## Installation

    pip install .

With the test dependencies:

    pip install ".[test]"

## Command line

Train a model and write its config and weights into a directory:

    ellipseunet train --artifact-dir artifacts

The artifact directory is deleted and recreated at the start of every run.
After training it holds these files:

- `config.json`
- `checkpoint/model-<epoch>.npz`, one per epoch
- `model.npz`, the final model

The mean train and validation loss are printed after each epoch. Training
uses Adam with a learning rate of 1e-3.

To override the defaults, pass a JSON config:

    ellipseunet train --artifact-dir artifacts --config my_config.json

The file must contain the objects `optimizer` and `model`. Other fields may be
left out and then take their defaults:

```json
{
  "num_epochs": 5,
  "train_size": 200,
  "valid_size": 50,
  "batch_size": 4,
  "num_workers": 2,
  "seed": 42,
  "optimizer": {"beta_1": 0.9, "beta_2": 0.999, "epsilon": 1e-05, "weight_decay": null},
  "model": {"base_channels": 32}
}
```

`seed` sets the weight initialisation and the shuffling of the training data.
When `num_workers` is greater than one, the samples of a batch are fetched on
a thread pool.

Run a trained model on samples from the test split:

    ellipseunet infer --artifact-dir artifacts --num-samples 10

The model config is read from `config.json` in the directory when that file
exists. Each printed line shows three things:

- the mean predicted foreground probability;
- the predicted class, with the ground truth and the class probability;
- the predicted regression value, with the ground truth.

Both commands exit with status 1 and print a message on errors such as a
missing model file or a bad config.

## Library use

```python
from ellipseunet.dataset import SyntheticEllipseDataset
from ellipseunet.data import with_transforms, SegmentationBatcher
from ellipseunet.model import UNetConfig
from ellipseunet.inference import predict

dataset = with_transforms(SyntheticEllipseDataset.train(16))
batch = SegmentationBatcher().batch([dataset[i] for i in range(4)])

model = UNetConfig().init(seed=42)
output = model.forward(batch.images)
print(output.seg_logits.shape)  # (4, 1, 96, 96)

model.set_training(False)
print(predict(model, dataset[0]).format(0))
```

`ellipseunet.training.run(artifact_dir, config_path=None)` and
`ellipseunet.inference.run(artifact_dir, num_samples=10)` do what the two
commands do. They return the trained model and the list of `Prediction`
objects.

## What it does not do

Everything runs on the CPU in NumPy. There is no GPU support and no choice of
compute backend. There is also no live training dashboard or metric logging
beyond the per-epoch loss lines. Training a full-size model is slow.