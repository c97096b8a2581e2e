import numpy as np
import pytest

from ellipseunet.data import with_transforms
from ellipseunet.dataset import SyntheticEllipseDataset
from ellipseunet.inference import Prediction, predict, run
from ellipseunet.model import UNetConfig
from ellipseunet.training import TrainConfig


def _make_artifacts(path, seed=0):
    model_cfg = UNetConfig(base_channels=1)
    model = model_cfg.init(seed)
    model.set_training(False)
    model.save(path / "model")
    TrainConfig(model=model_cfg).save(path / "config.json")
    return model


def test_prediction_format():
    pred = Prediction(
        fg_fraction=0.5, cls_pred=1, cls_prob=0.75, reg_pred=-1.234, gt_binary=0, gt_reg=2.5
    )
    assert pred.format(3) == "Sample   3 | fg=0.500 cls=1(gt=0,p=0.750) reg=-1.23(gt=2.50)"


def test_predict_values_are_consistent():
    model = UNetConfig(base_channels=1).init(0)
    model.set_training(False)
    item = with_transforms(SyntheticEllipseDataset.test(1))[0]
    pred = predict(model, item)
    assert 0.0 <= pred.fg_fraction <= 1.0
    assert 0.0 <= pred.cls_prob <= 1.0
    assert pred.cls_pred == (1 if pred.cls_prob >= 0.5 else 0)
    assert pred.gt_binary == item.binary_target
    assert pred.gt_reg == pytest.approx(item.regression_target)


def test_run_matches_in_memory_model(tmp_path, capsys):
    model = _make_artifacts(tmp_path)
    predictions = run(tmp_path, 2)
    dataset = with_transforms(SyntheticEllipseDataset.test(2))

    assert len(predictions) == 2
    for index, pred in enumerate(predictions):
        expected = predict(model, dataset[index])
        assert pred.gt_binary == expected.gt_binary
        assert pred.fg_fraction == pytest.approx(expected.fg_fraction, rel=1e-5)
        assert pred.reg_pred == pytest.approx(expected.reg_pred, rel=1e-5, abs=1e-6)

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "Running inference on 2 test samples…"
    assert [line for line in lines if line.startswith("Sample")] == [
        p.format(i) for i, p in enumerate(predictions)
    ]


def test_run_zero_samples(tmp_path):
    _make_artifacts(tmp_path)
    assert run(tmp_path, 0) == []


def test_run_rejects_negative_count(tmp_path):
    _make_artifacts(tmp_path)
    with pytest.raises(ValueError):
        run(tmp_path, -1)


def test_run_without_model_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        run(tmp_path, 1)


def test_run_config_mismatch_raises(tmp_path):
    _make_artifacts(tmp_path)
    TrainConfig(model=UNetConfig(base_channels=2)).save(tmp_path / "config.json")
    with pytest.raises(ValueError):
        run(tmp_path, 1)


def test_predictions_are_deterministic(tmp_path):
    _make_artifacts(tmp_path)
    first = run(tmp_path, 1)
    second = run(tmp_path, 1)
    assert np.isclose(first[0].fg_fraction, second[0].fg_fraction)
    assert first == second