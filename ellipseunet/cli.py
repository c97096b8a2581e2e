"""Command-line interface with ``train`` and ``infer`` sub-commands."""

from __future__ import annotations

import argparse
import sys

from ellipseunet import inference, training


def _non_negative(text: str) -> int:
    try:
        value = int(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid integer: {text!r}") from exc
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ellipseunet", description="UNet segmentation on synthetic ellipses"
    )
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    train = commands.add_parser("train", help="Train the UNet model on synthetic data.")
    train.add_argument(
        "--artifact-dir",
        default="artifacts",
        help="Directory for checkpoints, config, and the final model.",
    )
    train.add_argument(
        "--config", default=None, help="Path to a JSON config file. If omitted, uses defaults."
    )

    infer = commands.add_parser("infer", help="Run inference with a previously trained model.")
    infer.add_argument(
        "--artifact-dir", default="artifacts", help="Directory that contains the saved model."
    )
    infer.add_argument(
        "--num-samples", type=_non_negative, default=10, help="Number of test samples to run."
    )
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "train":
            training.run(args.artifact_dir, args.config)
        else:
            inference.run(args.artifact_dir, args.num_samples)
    except (OSError, ValueError, KeyError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())