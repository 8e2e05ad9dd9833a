from .backends import (
    BackendCapabilities,
    BackendHandle,
    BackendPreference,
    ComputeBackend,
    CPUBackend,
    CUDABackend,
    MPSBackend,
    PinnedStagingBuffer,
    compiled_backends,
    materialize,
    select_backend,
)
from .errors import (
    BackendError,
    BadMagic,
    CapacityExceeded,
    DeviceUnavailable,
    DuplicateTensor,
    EvaluationError,
    InvalidShape,
    LoadError,
    MissingTensor,
    OutOfDeviceMemory,
    SessionStateError,
    TensorSizeMismatch,
    TruncatedHeader,
    TruncatedTensor,
    UnknownEncoding,
    UnsupportedVersion,
)
from .executor import TransformerExecutor
from .kv_cache import KVCache
from .loader import (
    ContainerWriter,
    LoadParameters,
    LoadProgress,
    Model,
    WeightStore,
    convert_safetensors,
    open_model,
    quantize_container,
)
from .quantize import BlockDequantizer, Dequantizer, dequantize_bytes, nbytes_for, quantize
from .sampler import GreedySampler, Sampler, TopPTopKSampler
from .session import (
    Feedback,
    InferenceResponse,
    InferenceSession,
    InferenceStats,
    ResponseKind,
    SessionConfig,
    SessionState,
    StatusEvent,
    StepResult,
    StopReason,
    start_session,
)
from .storage import HeapStorage, MMapArena, TensorStorage
from .tokenizer import HuggingFaceTokenizer, Tokenizer, Utf8Buffer, VocabularyTokenizer
from .types import DeviceBuffer, ElementType, HostBuffer, Hyperparameters, Region, TensorDescriptor, Vocabulary

__all__ = [
    "BackendCapabilities",
    "BackendError",
    "BackendHandle",
    "BackendPreference",
    "BadMagic",
    "BlockDequantizer",
    "CPUBackend",
    "CUDABackend",
    "CapacityExceeded",
    "ComputeBackend",
    "ContainerWriter",
    "Dequantizer",
    "DeviceBuffer",
    "DeviceUnavailable",
    "DuplicateTensor",
    "ElementType",
    "EvaluationError",
    "Feedback",
    "GreedySampler",
    "HeapStorage",
    "HostBuffer",
    "HuggingFaceTokenizer",
    "Hyperparameters",
    "InferenceResponse",
    "InferenceSession",
    "InferenceStats",
    "InvalidShape",
    "KVCache",
    "LoadError",
    "LoadParameters",
    "LoadProgress",
    "MMapArena",
    "MPSBackend",
    "MissingTensor",
    "Model",
    "OutOfDeviceMemory",
    "PinnedStagingBuffer",
    "Region",
    "ResponseKind",
    "Sampler",
    "SessionConfig",
    "SessionState",
    "SessionStateError",
    "StatusEvent",
    "StepResult",
    "StopReason",
    "TensorDescriptor",
    "TensorSizeMismatch",
    "TensorStorage",
    "Tokenizer",
    "TopPTopKSampler",
    "TransformerExecutor",
    "TruncatedHeader",
    "TruncatedTensor",
    "UnknownEncoding",
    "UnsupportedVersion",
    "Utf8Buffer",
    "VocabularyTokenizer",
    "Vocabulary",
    "WeightStore",
    "compiled_backends",
    "convert_safetensors",
    "dequantize_bytes",
    "materialize",
    "nbytes_for",
    "open_model",
    "quantize",
    "quantize_container",
    "select_backend",
    "start_session",
]
