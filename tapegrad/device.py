"""
The numpy CPU device.

The device owns raw storage (``numpy.ndarray`` buffers): it allocates zeroed
buffers, samples random ones, and runs the indexed select/gather kernels.
Elementwise math is plain numpy inside each op's forward/backward.
"""

import logging
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from tapegrad.config_schema import DeviceConfig
from tapegrad.errors import AllocationFailure, IndexOutOfRange

logger = logging.getLogger(__name__)

_DEFAULT_DEVICE: Optional["Cpu"] = None


def default_device() -> "Cpu":
    """
    Return the process-wide device used when a tensor is created without one.

    Returns:
        Cpu: The shared default device.
    """
    global _DEFAULT_DEVICE
    if _DEFAULT_DEVICE is None:
        _DEFAULT_DEVICE = Cpu()
    return _DEFAULT_DEVICE


def _advanced_index(
    idx: np.ndarray, src_shape: Tuple[int, ...], axis: int, n_batch: int
) -> Tuple[np.ndarray, ...]:
    """
    Build the numpy advanced-index tuple that addresses ``src`` for every index position.

    Leading (prefix) axes of the source are addressed with ``arange`` arrays placed on the
    index dimension they line up with, so that ``src[tuple]`` broadcasts to ``idx.shape``
    and keeps the trailing source axes as plain slices.

    Examples:
        For ``src_shape=(2, 3, 4)``, ``axis=2`` and ``idx.shape=(2, 3)`` the result is
        ``(arange(2).reshape(2, 1), arange(3).reshape(1, 3), idx)``.

    Args:
        idx (np.ndarray): Integer index array of shape ``batch + src_shape[:axis] (+ (Z,))``.
        src_shape (Tuple[int, ...]): Shape of the source tensor.
        axis (int): The addressed axis.
        n_batch (int): Number of leading batch dims carried by ``idx``.

    Returns:
        Tuple[np.ndarray, ...]: One index array per source axis up to and including ``axis``.
    """
    index = []
    for k in range(axis):
        shape = [1] * idx.ndim
        shape[n_batch + k] = src_shape[k]
        index.append(np.arange(src_shape[k]).reshape(shape))
    index.append(idx)
    return tuple(index)


class Cpu:
    """
    A CPU device backed by numpy.

    Args:
        config (Optional[DeviceConfig]): Seed and default dtype. Defaults to ``DeviceConfig()``.
        seed (Optional[int]): Shortcut for ``DeviceConfig(seed=seed)``; ignored when ``config`` is given.
    """

    def __init__(
        self, config: Optional[DeviceConfig] = None, seed: Optional[int] = None
    ) -> None:
        self.config = config if config is not None else DeviceConfig(seed=seed)
        self.dtype = np.dtype(self.config.dtype)
        self.rng = np.random.default_rng(self.config.seed)

    def __repr__(self) -> str:
        return f"Cpu(dtype={self.dtype}, seed={self.config.seed})"

    ########### Allocation ###########
    def alloc_zeros(self, shape: Sequence[int], dtype: Any = None) -> np.ndarray:
        """
        Allocate a zero-filled buffer.

        Args:
            shape (Sequence[int]): Shape of the buffer.
            dtype (Any, optional): Element type. Defaults to the device dtype.

        Returns:
            np.ndarray: The new buffer.

        Raises:
            AllocationFailure: If the buffer cannot be allocated.
        """
        dtype = self.dtype if dtype is None else np.dtype(dtype)
        shape = tuple(int(d) for d in shape)
        try:
            return np.zeros(shape, dtype=dtype)
        except MemoryError as e:
            raise AllocationFailure(shape, dtype) from e

    def as_storage(self, data: Any, dtype: Any = None) -> np.ndarray:
        """
        Convert data to a storage buffer owned by this device.

        Integer and boolean data keep an integer dtype (``int64``) so it can be used
        as an index; everything else becomes the device float dtype.

        Args:
            data (Any): Scalar, nested sequence or array.
            dtype (Any, optional): Force a dtype. Defaults to None.

        Returns:
            np.ndarray: A buffer that does not alias ``data`` when ``data`` is a list.
        """
        arr = np.asarray(data)
        if dtype is None:
            dtype = np.int64 if arr.dtype.kind in "iub" else self.dtype
        try:
            return np.array(arr, dtype=dtype)
        except MemoryError as e:
            raise AllocationFailure(arr.shape, dtype) from e

    def sample_normal(self, shape: Sequence[int], dtype: Any = None) -> np.ndarray:
        """Standard normal samples of the given shape."""
        dtype = self.dtype if dtype is None else np.dtype(dtype)
        return self.rng.standard_normal(tuple(shape)).astype(dtype)

    def sample_uniform(
        self, shape: Sequence[int], low: float, high: float, dtype: Any = None
    ) -> np.ndarray:
        """Uniform samples in ``[low, high)`` of the given shape."""
        dtype = self.dtype if dtype is None else np.dtype(dtype)
        return self.rng.uniform(low, high, size=tuple(shape)).astype(dtype)

    ########### Indexed kernels ###########
    @staticmethod
    def check_index_range(idx: np.ndarray, extent: int, axis: int) -> None:
        """
        Trap index values outside ``[0, extent)``.

        Raises:
            IndexOutOfRange: On the first offending value (in C order).
        """
        if idx.size == 0:
            return
        bad = (idx < 0) | (idx >= extent)
        if bad.any():
            raise IndexOutOfRange(int(idx[bad].flat[0]), extent, axis)

    def select_forward(self, inp: np.ndarray, idx: np.ndarray, axis: int) -> np.ndarray:
        """
        Pick one element along ``axis`` for every index position, dropping that axis.

        ``idx`` has shape ``batch + inp.shape[:axis]``; the output has shape
        ``batch + inp.shape[:axis] + inp.shape[axis + 1:]``.
        """
        self.check_index_range(idx, inp.shape[axis], axis)
        index = _advanced_index(idx, inp.shape, axis, idx.ndim - axis)
        try:
            return np.asarray(inp[index])
        except MemoryError as e:
            raise AllocationFailure(idx.shape + inp.shape[axis + 1 :], inp.dtype) from e

    def select_backward(
        self, grad_inp: np.ndarray, idx: np.ndarray, grad_out: np.ndarray, axis: int
    ) -> None:
        """
        Scatter-add ``grad_out`` into ``grad_inp`` at the positions ``select_forward`` read.

        ``np.add.at`` is unbuffered, so repeated indices sum instead of overwriting.
        """
        self.check_index_range(idx, grad_inp.shape[axis], axis)
        index = _advanced_index(idx, grad_inp.shape, axis, idx.ndim - axis)
        np.add.at(grad_inp, index, grad_out)

    def gather_forward(self, inp: np.ndarray, idx: np.ndarray, axis: int) -> np.ndarray:
        """
        Replace the extent of ``axis`` with the trailing extent of ``idx``.

        ``idx`` has shape ``batch + inp.shape[:axis] + (Z,)``; the output has shape
        ``batch + inp.shape[:axis] + (Z,) + inp.shape[axis + 1:]``.
        """
        self.check_index_range(idx, inp.shape[axis], axis)
        index = _advanced_index(idx, inp.shape, axis, idx.ndim - axis - 1)
        try:
            return np.asarray(inp[index])
        except MemoryError as e:
            raise AllocationFailure(idx.shape + inp.shape[axis + 1 :], inp.dtype) from e

    def gather_backward(
        self, grad_inp: np.ndarray, idx: np.ndarray, grad_out: np.ndarray, axis: int
    ) -> None:
        """Scatter-add counterpart of :meth:`gather_forward`."""
        self.check_index_range(idx, grad_inp.shape[axis], axis)
        index = _advanced_index(idx, grad_inp.shape, axis, idx.ndim - axis - 1)
        np.add.at(grad_inp, index, grad_out)
