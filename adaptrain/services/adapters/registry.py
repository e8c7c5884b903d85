from adaptrain.schemas.training import ModelConfiguration, ModelType
from adaptrain.services.adapters.base import ModelAdapter
from adaptrain.services.adapters.classifier import SequenceClassifierAdapter
from adaptrain.services.adapters.dora import WeightDecompositionAdapter
from adaptrain.services.adapters.qr import QuantizedRankAdapter

ADAPTERS: dict[ModelType, type[ModelAdapter]] = {
    ModelType.DORA: WeightDecompositionAdapter,
    ModelType.QR_ADAPTOR: QuantizedRankAdapter,
    ModelType.PERSIAN_BERT: SequenceClassifierAdapter,
}


def create_adapter(model_type: ModelType | str, configuration: ModelConfiguration, **kwargs) -> ModelAdapter:
    """Build the adapter for ``model_type``; raises ConfigurationError on a bad adapter block."""
    model_type = ModelType(model_type)
    adapter_config = configuration.adapter_config(model_type)
    return ADAPTERS[model_type](configuration, adapter_config, **kwargs)
