"""
Exceptions raised by the tape, the gradient store and the device kernels.

Every error is raised by the call that detects it (op construction, kernel
dispatch or ``backward()``) and is never swallowed inside the library.
"""

from typing import Any, Optional, Tuple


class TapegradError(Exception):
    """Base class for all errors raised by tapegrad."""


class ShapeMismatch(TapegradError, ValueError):
    """
    Raised when a (source shape, destination shape, index shape, axis) combination
    violates the relationship an operation requires.

    This is detected when the operation is constructed, before any kernel runs.

    Attributes:
        op (str): Name of the operation being constructed.
        expected (Optional[Tuple[int, ...]]): The shape the operation required, if known.
        actual (Optional[Tuple[int, ...]]): The shape that was supplied, if known.
    """

    def __init__(
        self,
        message: str,
        op: str = "",
        expected: Optional[Tuple[int, ...]] = None,
        actual: Optional[Tuple[int, ...]] = None,
    ) -> None:
        super().__init__(f"{op}: {message}" if op else message)
        self.op = op
        self.expected = expected
        self.actual = actual


class IndexOutOfRange(TapegradError, IndexError):
    """
    Raised at kernel dispatch when an index value falls outside ``[0, extent)``
    of the axis it addresses. Values are never clamped or wrapped.

    Attributes:
        value (int): The first offending index value.
        extent (int): Size of the addressed axis.
        axis (int): The addressed axis of the source tensor.
    """

    def __init__(self, value: int, extent: int, axis: int) -> None:
        super().__init__(
            f"index {value} is out of range for axis {axis} with extent {extent}"
        )
        self.value = value
        self.extent = extent
        self.axis = axis


class AllocationFailure(TapegradError, MemoryError):
    """
    Raised when the device cannot provide a buffer for an output or a gradient.

    Attributes:
        shape (Tuple[int, ...]): The requested shape.
        dtype (Any): The requested dtype.
    """

    def __init__(self, shape: Tuple[int, ...], dtype: Any) -> None:
        super().__init__(f"could not allocate a {dtype} buffer of shape {shape}")
        self.shape = shape
        self.dtype = dtype


class AliasingViolation(TapegradError, RuntimeError):
    """
    Raised when the gradient store is asked for a mutable handle and a read-only
    view of the same tensor id at once. This signals a programming error in a
    backward op, not a recoverable condition.
    """

    def __init__(self, tensor_id: int) -> None:
        super().__init__(
            f"cannot borrow gradient {tensor_id} mutably and immutably at the same time"
        )
        self.tensor_id = tensor_id
