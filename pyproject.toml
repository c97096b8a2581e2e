[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ellipseunet"
version = "0.1.0"
description = "A small UNet-like segmentation model trained on synthetic ellipse images, built on NumPy"
requires-python = ">=3.10"
keywords = ["unet", "segmentation", "synthetic-data", "numpy", "deep-learning"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Education",
    "Environment :: Console",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
    "Topic :: Scientific/Engineering :: Image Processing",
]
dependencies = [
    "numpy",
    "pillow",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
ellipseunet = "ellipseunet.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ellipseunet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
