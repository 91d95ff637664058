"""
Shape relationships of the indexed ops.

For a source shape ``S`` and an axis ``a``, the index shape and the output shape of
select/gather follow mechanically from ``S`` and ``a``. They are checked here, when
the op is built, so a bad combination raises :class:`ShapeMismatch` before any
kernel runs.

Given a source of shape ``(M, N, O)``, the required index shapes are:

============  ==============  ================
axis          select index    gather index
============  ==============  ================
0             ``()``          ``(Z,)``
1             ``(M,)``        ``(M, Z)``
2             ``(M, N)``      ``(M, N, Z)``
============  ==============  ================

The index may also carry leading batch dims ``B``, which are prepended to the output
shape, e.g. gathering ``(4, 5)`` along axis 0 with an index of shape ``(2, 3)`` gives
``(2, 3, 5)``. Without an explicit axis the unbatched reading is tried first, then
the batched readings; exactly one of them must fit.
"""

import logging
from typing import Callable, NamedTuple, Optional, Sequence, Tuple

from tapegrad.errors import ShapeMismatch

logger = logging.getLogger(__name__)


class IndexedShape(NamedTuple):
    """The resolved geometry of a select/gather."""

    axis: int
    n_batch: int
    dst_shape: Tuple[int, ...]


def normalize_axis(axis: int, ndim: int, op: str) -> int:
    """
    Map a possibly negative axis into ``[0, ndim)``.

    Raises:
        ShapeMismatch: If the axis does not exist.
    """
    if not -ndim <= axis < ndim:
        raise ShapeMismatch(f"axis {axis} is out of bounds for rank {ndim}", op=op)
    return axis % ndim


def _select_batch_dims(
    src_shape: Tuple[int, ...], idx_shape: Tuple[int, ...], axis: int
) -> Optional[int]:
    # select reads an index of shape batch + src_shape[:axis]
    n_batch = len(idx_shape) - axis
    if n_batch < 0 or idx_shape[n_batch:] != src_shape[:axis]:
        return None
    return n_batch


def _gather_batch_dims(
    src_shape: Tuple[int, ...], idx_shape: Tuple[int, ...], axis: int
) -> Optional[int]:
    # gather reads an index of shape batch + src_shape[:axis] + (Z,)
    n_batch = len(idx_shape) - axis - 1
    if n_batch < 0 or idx_shape[n_batch : n_batch + axis] != src_shape[:axis]:
        return None
    return n_batch


def infer_axis(
    src_shape: Tuple[int, ...],
    idx_shape: Tuple[int, ...],
    unbatched_axis: int,
    batch_dims: Callable[[Tuple[int, ...], Tuple[int, ...], int], Optional[int]],
    op: str,
) -> int:
    """
    Pick the axis of an indexed op called without one.

    The unbatched reading (``unbatched_axis``, derived from the index rank) wins when it
    fits. Otherwise the index must fit exactly one axis once its extra leading dims are
    read as batch dims.

    Raises:
        ShapeMismatch: If no axis fits, or several batched readings do.
    """
    if (
        unbatched_axis < len(src_shape)
        and batch_dims(src_shape, idx_shape, unbatched_axis) == 0
    ):
        return unbatched_axis

    fits = [
        axis
        for axis in range(len(src_shape))
        if axis != unbatched_axis and batch_dims(src_shape, idx_shape, axis) is not None
    ]
    if len(fits) == 1:
        logger.debug(
            f"{op}: index {idx_shape} on {src_shape} resolved to axis {fits[0]} "
            f"with {batch_dims(src_shape, idx_shape, fits[0])} batch dim(s)"
        )
        return fits[0]
    if fits:
        raise ShapeMismatch(
            f"index shape {idx_shape} fits {src_shape} along axes {fits}, pass axis explicitly",
            op=op,
            actual=idx_shape,
        )
    raise ShapeMismatch(
        f"index shape {idx_shape} does not fit {src_shape} along any axis",
        op=op,
        actual=idx_shape,
    )


def remove_dim(
    src_shape: Sequence[int], idx_shape: Sequence[int], axis: Optional[int] = None
) -> IndexedShape:
    """
    Resolve a select: one element per index position, dropping ``axis``.

    Args:
        src_shape (Sequence[int]): Shape of the source tensor.
        idx_shape (Sequence[int]): Shape of the index tensor.
        axis (Optional[int]): Axis to select from. When None it is ``len(idx_shape)`` if
            that fits, else the single axis the index fits with leading batch dims.

    Returns:
        IndexedShape: Axis, number of batch dims and output shape.

    Raises:
        ShapeMismatch: If the index shape is not ``batch + src_shape[:axis]``.
    """
    src_shape, idx_shape = tuple(src_shape), tuple(idx_shape)
    if len(src_shape) == 0:
        raise ShapeMismatch("cannot select from a scalar", op="select")

    if axis is None:
        axis = infer_axis(
            src_shape, idx_shape, len(idx_shape), _select_batch_dims, "select"
        )
    else:
        axis = normalize_axis(axis, len(src_shape), "select")

    n_batch = _select_batch_dims(src_shape, idx_shape, axis)
    if n_batch is None:
        raise ShapeMismatch(
            f"index shape must end with {src_shape[:axis]} to select axis {axis} of {src_shape}",
            op="select",
            expected=src_shape[:axis],
            actual=idx_shape,
        )
    return IndexedShape(axis, n_batch, idx_shape + src_shape[axis + 1 :])


def replace_dim(
    src_shape: Sequence[int], idx_shape: Sequence[int], axis: Optional[int] = None
) -> IndexedShape:
    """
    Resolve a gather: the extent of ``axis`` is replaced by the last extent of the index.

    Args:
        src_shape (Sequence[int]): Shape of the source tensor.
        idx_shape (Sequence[int]): Shape of the index tensor.
        axis (Optional[int]): Axis to gather along. When None it is ``len(idx_shape) - 1``
            if that fits, else the single axis the index fits with leading batch dims.

    Returns:
        IndexedShape: Axis, number of batch dims and output shape.

    Raises:
        ShapeMismatch: If the index shape is not ``batch + src_shape[:axis] + (Z,)``.
    """
    src_shape, idx_shape = tuple(src_shape), tuple(idx_shape)
    if len(src_shape) == 0:
        raise ShapeMismatch("cannot gather from a scalar", op="gather")
    if len(idx_shape) == 0:
        raise ShapeMismatch(
            "gather needs an index of rank >= 1, use select for a single position",
            op="gather",
            actual=idx_shape,
        )

    if axis is None:
        axis = infer_axis(
            src_shape, idx_shape, len(idx_shape) - 1, _gather_batch_dims, "gather"
        )
    else:
        axis = normalize_axis(axis, len(src_shape), "gather")

    n_batch = _gather_batch_dims(src_shape, idx_shape, axis)
    if n_batch is None:
        raise ShapeMismatch(
            f"index shape must be {src_shape[:axis] + ('Z',)} (with optional leading batch dims) "
            f"to gather axis {axis} of {src_shape}",
            op="gather",
            expected=src_shape[:axis],
            actual=idx_shape,
        )
    return IndexedShape(axis, n_batch, idx_shape + src_shape[axis + 1 :])
