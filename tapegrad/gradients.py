"""
Tensor identities and the gradient store.

Gradients are keyed by :data:`UniqueId`, not by tensor handle: every handle that
shares storage with a leaf (``trace()``, ``with_empty_tape()``, ...) shares its id
and therefore accumulates into the same gradient buffer.
"""

import itertools
import logging
from typing import Any, Dict, Iterator, NamedTuple, Optional, Set, Tuple, Union

import numpy as np

from tapegrad.device import Cpu, default_device
from tapegrad.errors import AliasingViolation, ShapeMismatch

logger = logging.getLogger(__name__)

UniqueId = int

# Ids are never reused within a process, so a stale id can never address a newer tensor.
_id_counter = itertools.count()


def unique_id() -> UniqueId:
    """Return a fresh tensor identity."""
    return next(_id_counter)


class Ghost(NamedTuple):
    """
    What a backward op remembers about a tensor: its identity, shape and dtype,
    but neither its storage nor its tape.
    """

    id: UniqueId
    shape: Tuple[int, ...]
    dtype: Any


def _as_id(key: Any) -> UniqueId:
    # Accept a raw id, a Ghost or a Tensor
    return key if isinstance(key, int) else key.id


class Gradients:
    """
    Mapping from tensor id to an accumulated gradient buffer.

    Buffers are allocated lazily and zero-filled. There is at most one buffer per id
    and its shape is fixed when it is allocated. Buffers are always floating point:
    an integer tensor used as a differentiable input gets a gradient in the device dtype.

    After a successful ``backward()`` the store is frozen: buffers become read-only and
    any further allocation or mutable access raises ``RuntimeError``.

    Examples:
        >>> grads = Gradients()
        >>> g = grads.get_or_alloc(3, (2,))
        >>> g += 1.0
        >>> grads.get(3)
        array([1., 1.], dtype=float32)
        >>> grads.get(4) is None
        True
    """

    def __init__(self, device: Optional[Cpu] = None) -> None:
        self.device = device if device is not None else default_device()
        self._buffers: Dict[UniqueId, np.ndarray] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise RuntimeError(
                "gradients are read-only once backward() has completed"
            )

    def get_or_alloc(
        self, tensor_id: UniqueId, shape: Tuple[int, ...], dtype: Any = None
    ) -> np.ndarray:
        """
        Return the mutable gradient buffer for ``tensor_id``, allocating zeros on first request.

        Args:
            tensor_id (UniqueId): Identity of the tensor.
            shape (Tuple[int, ...]): Shape of the tensor (used only on allocation).
            dtype (Any, optional): Buffer dtype. Defaults to the device dtype, which also
                replaces any non-floating dtype.

        Returns:
            np.ndarray: The gradient buffer.

        Raises:
            ShapeMismatch: If a buffer already exists for this id with another shape.
            AllocationFailure: If the device cannot allocate the buffer.
        """
        self._check_mutable()
        buf = self._buffers.get(tensor_id)
        if buf is None:
            if dtype is not None and np.dtype(dtype).kind != "f":
                dtype = None
            buf = self.device.alloc_zeros(shape, dtype)
            self._buffers[tensor_id] = buf
        elif buf.shape != tuple(shape):
            raise ShapeMismatch(
                f"gradient for tensor {tensor_id} was allocated with shape {buf.shape}",
                op="get_or_alloc",
                expected=buf.shape,
                actual=tuple(shape),
            )
        return buf

    def get(self, key: Union[UniqueId, Any]) -> Optional[np.ndarray]:
        """
        Return the gradient buffer for a tensor, or ``None`` if no gradient was ever recorded.

        Args:
            key (Union[UniqueId, Tensor, Ghost]): The tensor or its id.

        Returns:
            Optional[np.ndarray]: The buffer (read-only once frozen) or None.
        """
        return self._buffers.get(_as_id(key))

    def mut_and_ref(
        self, id_mut: UniqueId, id_ref: UniqueId
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Borrow one gradient mutably and another one read-only at the same time.

        A backward step writes the gradient of its input while reading the gradient of its
        output, which are always different tensors.

        Args:
            id_mut (UniqueId): Id whose buffer is returned writable.
            id_ref (UniqueId): Id whose buffer is returned as a read-only view.

        Returns:
            Tuple[np.ndarray, np.ndarray]: ``(writable buffer, read-only view)``.

        Raises:
            AliasingViolation: If both ids are the same.
            KeyError: If either buffer was never allocated.
        """
        if id_mut == id_ref:
            raise AliasingViolation(id_mut)
        self._check_mutable()
        try:
            buf_mut = self._buffers[id_mut]
            buf_ref = self._buffers[id_ref]
        except KeyError as e:
            raise KeyError(f"no gradient buffer allocated for tensor {e.args[0]}") from e
        view = buf_ref.view()
        view.flags.writeable = False
        return buf_mut, view

    def merge(self, other: "Gradients") -> None:
        """
        Move every buffer of ``other`` into this store; ``other`` is left empty.
        Buffers already present here are kept.
        """
        self._check_mutable()
        for tensor_id, buf in other._buffers.items():
            self._buffers.setdefault(tensor_id, buf)
        other._buffers = {}

    def freeze(self) -> None:
        """Make the store and every buffer in it read-only."""
        for buf in self._buffers.values():
            buf.flags.writeable = False
        self._frozen = True

    def __contains__(self, key: Any) -> bool:
        return _as_id(key) in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def __iter__(self) -> Iterator[UniqueId]:
        return iter(self._buffers)

    def __repr__(self) -> str:
        return f"Gradients(num_buffers={len(self._buffers)}, frozen={self._frozen})"


class UnusedTensors:
    """
    Ids of tensors that expected a gradient during an update pass but did not receive one.
    A non-empty set usually means a parameter is disconnected from the loss.
    """

    def __init__(self) -> None:
        self.ids: Set[UniqueId] = set()

    def add(self, key: Union[UniqueId, Any]) -> None:
        self.ids.add(_as_id(key))

    def is_empty(self) -> bool:
        return not self.ids

    def __contains__(self, key: Any) -> bool:
        return _as_id(key) in self.ids

    def __len__(self) -> int:
        return len(self.ids)

    def __iter__(self) -> Iterator[UniqueId]:
        return iter(sorted(self.ids))

    def __repr__(self) -> str:
        return f"UnusedTensors({sorted(self.ids)})"
