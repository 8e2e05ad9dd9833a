from __future__ import annotations


class LoadError(Exception):
    """The model container is malformed or incompatible."""


class BadMagic(LoadError):
    def __init__(self, magic: bytes) -> None:
        super().__init__(f"invalid container magic: {magic!r}")
        self.magic = magic


class UnsupportedVersion(LoadError):
    def __init__(self, version: int) -> None:
        super().__init__(f"unsupported container version: {version}")
        self.version = version


class TruncatedHeader(LoadError):
    """The header, vocabulary or tensor table ended early."""


class TruncatedTensor(LoadError):
    def __init__(self, name: str, end: int, file_size: int) -> None:
        super().__init__(
            f"tensor {name!r} extends to byte {end} but the file is {file_size} bytes"
        )
        self.tensor_name = name


class UnknownEncoding(LoadError):
    def __init__(self, tag: int, name: str | None = None) -> None:
        where = f" for tensor {name!r}" if name else ""
        super().__init__(f"unknown element encoding {tag}{where}")
        self.tag = tag
        self.tensor_name = name


class DuplicateTensor(LoadError):
    def __init__(self, name: str) -> None:
        super().__init__(f"duplicate tensor name: {name!r}")
        self.tensor_name = name


class InvalidShape(LoadError):
    pass


class TensorSizeMismatch(LoadError):
    def __init__(self, name: str, expected: int, declared: int) -> None:
        super().__init__(
            f"tensor {name!r}: shape and encoding imply {expected} bytes, "
            f"container declares {declared}"
        )
        self.tensor_name = name
        self.expected = expected
        self.declared = declared


class MissingTensor(LoadError):
    def __init__(self, name: str) -> None:
        super().__init__(f"required tensor missing: {name!r}")
        self.tensor_name = name


class BackendError(Exception):
    """Backend selection or device allocation failed."""


class DeviceUnavailable(BackendError):
    pass


class OutOfDeviceMemory(BackendError):
    def __init__(self, backend: str, nbytes: int, detail: str = "") -> None:
        msg = f"{backend}: failed to allocate {nbytes} bytes"
        if detail:
            msg = f"{msg} ({detail})"
        super().__init__(msg)
        self.backend = backend
        self.nbytes = nbytes


class EvaluationError(Exception):
    """A feed or generate step failed inside the backend."""


class CapacityExceeded(Exception):
    def __init__(self, requested: int, capacity: int) -> None:
        super().__init__(f"key/value cache needs {requested} slots, capacity is {capacity}")
        self.requested = requested
        self.capacity = capacity


class SessionStateError(RuntimeError):
    """An operation was called in a session state that does not allow it."""
