import pytest
import torch

from adaptrain.core.exceptions import ConfigurationError
from adaptrain.schemas.training import DEFAULT_CATEGORIES, ModelConfiguration, SequenceClassifierConfig
from adaptrain.services.adapters.classifier import SequenceClassifier, SequenceClassifierAdapter
from adaptrain.services.training.data import Batch


def _configuration(**bert) -> ModelConfiguration:
    params = dict(max_sequence_length=16, hidden_size=32, num_attention_heads=4, num_layers=1, intermediate_size=64)
    params.update(bert)
    return ModelConfiguration(
        learning_rate=0.001, batch_size=4, epochs=1, dropout=0.0, bert_config=SequenceClassifierConfig(**params)
    )


def _adapter(configuration: ModelConfiguration | None = None, seed: int = 0) -> SequenceClassifierAdapter:
    configuration = configuration or _configuration()
    adapter = SequenceClassifierAdapter(configuration, configuration.bert_config, total_steps=10, seed=seed)
    adapter.initialize(None)
    return adapter


class TestSequenceClassifier:
    def test_logits_shape(self):
        model = SequenceClassifier(_configuration().bert_config, dropout=0.0)
        logits = model(torch.randint(1, 50, (3, 16)))
        assert logits.shape == (3, len(DEFAULT_CATEGORIES))

    def test_padding_does_not_change_prediction(self):
        model = SequenceClassifier(_configuration().bert_config, dropout=0.0).eval()
        short = torch.tensor([[2, 10, 11, 3]])
        padded = torch.tensor([[2, 10, 11, 3, 0, 0, 0, 0]])
        with torch.no_grad():
            assert torch.allclose(model(short), model(padded), atol=1e-5)

    def test_rejects_long_sequences(self):
        model = SequenceClassifier(_configuration().bert_config)
        with pytest.raises(ValueError):
            model(torch.ones(1, 17, dtype=torch.long))


class TestClassifierAdapter:
    def test_all_parameters_are_trainable_buffers(self):
        adapter = _adapter()
        params = list(adapter.model.parameters())
        assert len(adapter.buffers) == len(params)
        assert all(p.requires_grad for p in params)

    def test_vocab_smaller_than_tokenizer(self):
        configuration = _configuration(vocab_size=8)
        adapter = SequenceClassifierAdapter(configuration, configuration.bert_config)
        with pytest.raises(ConfigurationError):
            adapter.initialize(None)

    def test_probabilities_sum_to_one(self):
        probabilities = _adapter().predict_proba(["قانون مدنی", "رای دادگاه"])
        assert probabilities.shape == (2, len(DEFAULT_CATEGORIES))
        assert torch.allclose(probabilities.sum(dim=-1), torch.ones(2), atol=1e-5)

    def test_no_texts(self):
        assert _adapter().predict_proba([]).shape == (0, len(DEFAULT_CATEGORIES))

    def test_classify(self):
        result = _adapter().classify("این قرارداد بین دو طرف است")
        assert result.category in DEFAULT_CATEGORIES
        assert result.confidence == pytest.approx(max(result.probabilities.values()))
        assert sum(result.probabilities.values()) == pytest.approx(1.0, abs=1e-4)

    def test_custom_categories(self):
        result = _adapter(_configuration(categories=["a", "b"])).classify("قانون")
        assert set(result.probabilities) == {"a", "b"}

    def test_train_step_updates_weights(self):
        adapter = _adapter()
        head = adapter.model.classifier.weight.detach().clone()
        inputs = adapter.tokenizer.encode_batch(["قانون", "حکم", "ماده", "بند"], 16)
        adapter.train_step(Batch(inputs, torch.tensor([0, 1, 2, 3])))
        assert not torch.equal(adapter.model.classifier.weight, head)

    def test_restore_round_trip(self):
        trained = _adapter()
        inputs = trained.tokenizer.encode_batch(["قانون", "حکم"], 16)
        trained.train_step(Batch(inputs, torch.tensor([0, 1])))
        state = trained.checkpoint()

        fresh = _adapter(seed=42)
        fresh.restore(state)
        assert torch.allclose(fresh.predict_proba(["قانون"]), trained.predict_proba(["قانون"]), atol=1e-5)

    def test_restore_rejects_wrong_shape(self):
        state = _adapter().checkpoint()
        other = _adapter(_configuration(hidden_size=16))
        with pytest.raises(ConfigurationError):
            other.restore(state)
