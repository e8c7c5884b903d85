from collections import OrderedDict

import pytest
import torch
from structlog.testing import capture_logs
from torch import nn

from adaptrain.schemas.training import ModelConfiguration, QRAdaptorConfig
from adaptrain.services.adapters.qr import QuantizedRankAdapter, factored_rank
from adaptrain.services.training.base_models import build_dense_model
from adaptrain.services.training.data import Batch


def _configuration(**qr) -> ModelConfiguration:
    return ModelConfiguration(learning_rate=0.01, batch_size=8, epochs=1, dropout=0.0, qr_config=QRAdaptorConfig(**qr))


def _adapter(configuration: ModelConfiguration) -> QuantizedRankAdapter:
    return QuantizedRankAdapter(configuration, configuration.qr_config, total_steps=20, seed=0)


def _square_model() -> nn.Module:
    torch.manual_seed(0)
    return nn.Sequential(OrderedDict([("dense", nn.Linear(64, 64))]))


class TestFactoredRank:
    @pytest.mark.parametrize(
        "m,n,ratio,expected",
        [(64, 64, 0.5, 32), (128, 16, 0.5, 8), (10, 10, 0.05, 1), (8, 8, 1.0, 8)],
    )
    def test_rank_optimization(self, m, n, ratio, expected):
        assert factored_rank(m, n, ratio, rank_optimization=True) == expected

    def test_fixed_rank_without_optimization(self):
        assert factored_rank(128, 64, 0.5, rank_optimization=False) == 32
        assert factored_rank(128, 16, 0.5, rank_optimization=False) == 16


class TestCompressionAnalysis:
    def test_square_layer_at_half_ratio(self):
        adapter = _adapter(_configuration(quantization_bits=8, precision_mode="int8", compression_ratio=0.5))
        adapter.initialize(_square_model())

        layer = adapter.layers["dense.weight"]
        assert layer.rank == 32
        assert adapter.buffers.get("dense.weight.q").shape == (64, 32)
        assert adapter.buffers.get("dense.weight.r").shape == (32, 64)

        analysis = adapter.get_compression_analysis()
        assert analysis["total_original_size"] == 4096
        assert analysis["total_compressed_size"] == 4096
        assert analysis["compression_ratio"] == pytest.approx(1.0)
        assert analysis["precision_mode"] == "int8"
        assert analysis["quantization_bits"] == 8

    def test_totals_are_sums_over_layers(self):
        adapter = _adapter(_configuration())
        adapter.initialize(build_dense_model(16, 4))
        analysis = adapter.get_compression_analysis()

        assert [entry["name"] for entry in analysis["layers"]] == ["dense_1.weight", "dense_2.weight", "dense_out.weight"]
        assert analysis["total_original_size"] == sum(e["original_size"] for e in analysis["layers"])
        assert analysis["total_compressed_size"] == sum(e["compressed_size"] for e in analysis["layers"])

    def test_biases_are_left_alone(self):
        adapter = _adapter(_configuration())
        adapter.initialize(build_dense_model(16, 4))
        assert all(key.endswith(".weight") for key in adapter.layers)

    def test_efficiency_follows_compression(self):
        adapter = _adapter(_configuration(compression_ratio=0.5))
        adapter.initialize(_square_model())
        assert adapter.get_metrics().efficiency == pytest.approx(0.2)

    def test_no_matching_module_warns(self):
        adapter = _adapter(_configuration(target_modules=["attention"]))
        with capture_logs() as logs:
            adapter.initialize(_square_model())
        assert adapter.get_compression_analysis()["compression_ratio"] == 1.0
        assert any(e["event"] == "qr_no_target_modules" for e in logs)


class TestTraining:
    def test_forward_uses_reconstruction(self):
        adapter = _adapter(_configuration())
        model = _square_model()
        adapter.initialize(model)
        x = torch.randn(3, 64)
        expected = x @ adapter.reconstruct("dense.weight").T + model.dense.bias
        assert torch.allclose(adapter.forward(x), expected, atol=1e-5)

    def test_only_factors_train(self):
        model = _square_model()
        weight = model.dense.weight.detach().clone()
        adapter = _adapter(_configuration())
        adapter.initialize(model)
        q = adapter.buffers.get("dense.weight.q").detach().clone()

        batch = Batch(torch.randn(8, 64), torch.randint(0, 64, (8,)))
        adapter.train_step(batch)

        assert torch.equal(model.dense.weight, weight)
        assert not torch.equal(adapter.buffers.get("dense.weight.q"), q)


class TestRankInspection:
    def test_collapsed_factor_is_flagged_not_resized(self):
        adapter = _adapter(_configuration())
        adapter.initialize(_square_model())
        with torch.no_grad():
            adapter.buffers.get("dense.weight.q").mul_(1e-4)

        with capture_logs() as logs:
            adapter.after_step(100)

        assert adapter.rank_reduction_candidates == {"dense.weight"}
        assert adapter.layers["dense.weight"].rank == 32
        assert any(e["event"] == "qr_rank_reduction_candidate" for e in logs)

    def test_inspection_only_runs_on_interval(self):
        adapter = _adapter(_configuration())
        adapter.initialize(_square_model())
        with torch.no_grad():
            adapter.buffers.get("dense.weight.q").zero_()
        adapter.after_step(99)
        assert adapter.rank_reduction_candidates == set()

    def test_dynamic_rank_disabled(self):
        adapter = _adapter(_configuration(dynamic_rank=False))
        adapter.initialize(_square_model())
        with torch.no_grad():
            adapter.buffers.get("dense.weight.q").zero_()
        adapter.after_step(100)
        assert adapter.rank_reduction_candidates == set()


class TestCheckpoint:
    def test_restore(self):
        configuration = _configuration()
        trained = _adapter(configuration)
        trained.initialize(_square_model())
        trained.train_step(Batch(torch.randn(8, 64), torch.randint(0, 64, (8,))))
        state = trained.checkpoint()

        fresh = QuantizedRankAdapter(configuration, configuration.qr_config, total_steps=20, seed=5)
        fresh.initialize(_square_model())
        fresh.restore(state)

        assert fresh.step == 1
        assert torch.allclose(fresh.reconstruct("dense.weight"), trained.reconstruct("dense.weight"))
