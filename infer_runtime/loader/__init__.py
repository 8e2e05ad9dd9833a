from .container import (
    CURRENT_VERSION,
    DATA_ALIGNMENT,
    MAGIC,
    SUPPORTED_VERSIONS,
    ContainerHeader,
    ContainerWriter,
    TensorRecord,
    read_header,
)
from .convert import convert_safetensors, quantize_container
from .weight_store import (
    HyperparametersLoaded,
    LoadParameters,
    LoadProgress,
    Loaded,
    Model,
    TensorLoaded,
    WeightStore,
    open_model,
)

__all__ = [
    "CURRENT_VERSION",
    "ContainerHeader",
    "ContainerWriter",
    "DATA_ALIGNMENT",
    "HyperparametersLoaded",
    "LoadParameters",
    "LoadProgress",
    "Loaded",
    "MAGIC",
    "Model",
    "SUPPORTED_VERSIONS",
    "TensorLoaded",
    "TensorRecord",
    "WeightStore",
    "convert_safetensors",
    "open_model",
    "quantize_container",
    "read_header",
]
