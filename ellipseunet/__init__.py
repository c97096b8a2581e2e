"""UNet-like segmentation of synthetic ellipse images in NumPy: dataset, layers, model, training and inference."""

__version__ = "0.1.0"
__all__ = ["__version__"]