import logging
from abc import abstractmethod
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from tapegrad.device import Cpu, default_device
from tapegrad.errors import ShapeMismatch
from tapegrad.gradients import Ghost, Gradients, UniqueId, unique_id
from tapegrad.shapes import IndexedShape, remove_dim, replace_dim
from tapegrad.tape import NONE_TAPE, BackwardOp, OwnedTape, Tape

logger = logging.getLogger(__name__)


class Function(BackwardOp):
    """
    Base class for differentiable operations.

    Subclasses implement ``forward`` (numpy in, numpy out) and ``backward`` (gradient of
    the output in, gradient(s) of the inputs out). ``apply`` runs the forward pass,
    moves the input tapes into one tape, and records the function on it so
    ``replay`` can run ``backward`` later.

    A function only keeps :class:`Ghost` records of its inputs and output, never the
    tensors themselves. Anything else ``backward`` needs must be saved in ``forward``.
    """

    def __init__(self, *tensors: "Tensor"):
        """
        Initialize a `Function` with a set of input tensors.

        Args:
            *tensors (Tensor): The input tensors for this operation.
        """
        self.inputs: Tuple[Ghost, ...] = tuple(t.ghost() for t in tensors)
        self.device: Cpu = tensors[0].device
        self.output: Optional[Ghost] = None

    @abstractmethod
    def forward(self, *args: np.ndarray, **kwargs: Any) -> np.ndarray:
        """
        Perform the forward pass of this operation.

        Args:
            *args (np.ndarray): Data arrays of the input tensors.
            **kwargs (Any): Op-specific arguments.

        Returns:
            np.ndarray: The result of the forward pass.
        """
        raise NotImplementedError("Forward pass not implemented for this function")

    @abstractmethod
    def backward(
        self, grad: np.ndarray
    ) -> Union[Optional[np.ndarray], Tuple[Optional[np.ndarray], ...]]:
        """
        Perform the backward pass of this operation.

        - ``grad`` is the gradient of the loss with respect to the *output* (dL/d[out]),
          a read-only array.
        - The return value is the gradient with respect to each *input* (dL/d[input]),
          one array per input (a tuple when there are several), with the input's shape.
          ``None`` means "no contribution".

        Args:
            grad (np.ndarray): The gradient with respect to the output of this operation.

        Returns:
            The gradient(s) with respect to the input(s).
        """
        raise NotImplementedError("Backward pass not implemented for this function")

    def replay(self, grads: Gradients) -> None:
        """
        Read the output gradient, run ``backward`` and add the results into the input gradients.
        """
        # Inputs are always distinct from the output, so the first input gives us the read view
        _, grad_out = grads.mut_and_ref(self.inputs[0].id, self.output.id)
        input_grads = self.backward(grad_out)
        if not isinstance(input_grads, tuple):
            input_grads = (input_grads,)

        for ghost, g in zip(self.inputs, input_grads):
            if g is None:
                continue
            grad_inp, _ = grads.mut_and_ref(ghost.id, self.output.id)
            if g.shape != grad_inp.shape:
                raise ShapeMismatch(
                    f"{type(self).__name__}.backward returned a gradient of shape {g.shape}",
                    op=type(self).__name__,
                    expected=grad_inp.shape,
                    actual=g.shape,
                )
            grad_inp += g

    @classmethod
    def apply(cls, *tensors: "Tensor", **kwargs: Any) -> "Tensor":
        """
        Construct and apply this function to the given tensors.

        This method:
        1) Creates an instance of the function and runs its forward pass on the tensors' data.
        2) Moves the tapes out of the inputs and merges them (left to right).
        3) If the merged tape records, pre-allocates gradients and appends the function.
        4) Returns a new tensor (fresh id) that owns the merged tape.

        The gradients are allocated on the first recording input tape before any tape
        moves, so if the forward pass or an allocation raises, the inputs keep their tapes.

        Args:
            *tensors (Tensor): Input tensors to the operation.
            **kwargs (Any): Additional keyword arguments passed to the forward method.

        Returns:
            Tensor: The resulting tensor after the forward operation.
        """
        func = cls(*tensors)
        out_data = np.asarray(func.forward(*(inp.data for inp in tensors), **kwargs))
        if out_data.dtype.kind == "f" and out_data.dtype != func.device.dtype:
            out_data = out_data.astype(func.device.dtype)

        out = Tensor.from_storage(out_data, func.device)
        func.output = out.ghost()
        recording = [inp.tape for inp in tensors if inp.tape.is_recording]
        if recording:
            for ghost in func.inputs + (func.output,):
                recording[0].try_alloc_grad(ghost)

        tape: Tape = NONE_TAPE
        for inp in tensors:
            _, inp_tape = inp.split_tape()
            tape = tape.merge(inp_tape)

        if tape.is_recording:
            tape.add_backward_op(func)
        return out.put_tape(tape)

    @staticmethod
    def unbroadcast(grad_arr: np.ndarray, to_shape: Tuple[int, ...]) -> np.ndarray:
        """
        Sum out broadcasted dimensions so that grad_arr can match to_shape.
        Essentially the inverse of numpy's broadcasting.

        Args:
            grad_arr (np.ndarray): Gradient array to unbroadcast.
            to_shape (Tuple[int, ...]): Shape to unbroadcast to.

        Returns:
            np.ndarray: Unbroadcasted gradient array.
        """
        if grad_arr.shape == to_shape:
            return grad_arr

        # e.g. grad_arr.shape (4,3,2) and to_shape (1,3,2): first sum out extra leading dims
        while len(grad_arr.shape) > len(to_shape):
            grad_arr = grad_arr.sum(axis=0, keepdims=False)

        # then every dim that was 1 in to_shape
        for dim in range(len(to_shape)):
            if to_shape[dim] == 1 and grad_arr.shape[dim] != 1:
                grad_arr = grad_arr.sum(axis=dim, keepdims=True)

        return grad_arr


class FillOnes(BackwardOp):
    """Seeds dL/dL = 1 for the scalar ``backward()`` was called on."""

    def __init__(self, ghost: Ghost) -> None:
        self.ghost = ghost

    def replay(self, grads: Gradients) -> None:
        grads.get_or_alloc(self.ghost.id, self.ghost.shape, self.ghost.dtype)[...] += 1


class Tensor:
    """
    A `Tensor` is a shaped handle over a shared numpy buffer, with an identity and a tape.

    Several handles may share the same storage and the same id (see ``trace``,
    ``split_tape``, ``put_tape`` and ``with_empty_tape``); they all accumulate into the
    same gradient slot. Every op output gets a fresh id.

    Examples:
        >>> dev = Cpu(seed=0)
        >>> t = Tensor([1.0, 2.0, 3.0], device=dev)
        >>> loss = t.trace().gather([0, 0, 2]).sum()
        >>> grads = loss.backward()
        >>> grads.get(t)
        array([2., 0., 1.], dtype=float32)
    """

    def __init__(
        self,
        data: Union[np.ndarray, float, int, Sequence[float], Sequence[Sequence[float]]],
        device: Optional[Cpu] = None,
        dtype: Any = None,
    ):
        """
        Create a leaf tensor with a fresh id and no tape.

        Args:
            data: The data for this tensor. It is copied. Integer data stays ``int64``
                (usable as an index), anything else becomes the device float dtype.
            device (Optional[Cpu], optional): Owning device. Defaults to the shared default device.
            dtype (Any, optional): Force a dtype. Defaults to None.
        """
        self.device = device if device is not None else default_device()
        self.data: np.ndarray = self.device.as_storage(data, dtype)
        self.id: UniqueId = unique_id()
        self.tape: Tape = NONE_TAPE

    @classmethod
    def from_storage(
        cls,
        storage: np.ndarray,
        device: Cpu,
        tensor_id: Optional[UniqueId] = None,
        tape: Tape = NONE_TAPE,
    ) -> "Tensor":
        """
        Wrap an existing buffer without copying it.

        Args:
            storage (np.ndarray): The buffer, shared with the caller.
            device (Cpu): Owning device.
            tensor_id (Optional[UniqueId], optional): Reuse an id. Defaults to a fresh one.
            tape (Tape, optional): Tape to attach. Defaults to no tape.

        Returns:
            Tensor: The new handle.
        """
        out = cls.__new__(cls)
        out.device = device
        out.data = storage
        out.id = unique_id() if tensor_id is None else tensor_id
        out.tape = tape
        return out

    @staticmethod
    def zeros(shape: Sequence[int], device: Optional[Cpu] = None) -> "Tensor":
        device = device if device is not None else default_device()
        return Tensor.from_storage(device.alloc_zeros(shape), device)

    @staticmethod
    def ones(shape: Sequence[int], device: Optional[Cpu] = None) -> "Tensor":
        device = device if device is not None else default_device()
        storage = device.alloc_zeros(shape)
        storage[...] = 1
        return Tensor.from_storage(storage, device)

    @staticmethod
    def randn(shape: Sequence[int], device: Optional[Cpu] = None) -> "Tensor":
        """Leaf tensor with standard normal entries drawn from the device generator."""
        device = device if device is not None else default_device()
        return Tensor.from_storage(device.sample_normal(shape), device)

    @staticmethod
    def uniform(
        shape: Sequence[int], low: float, high: float, device: Optional[Cpu] = None
    ) -> "Tensor":
        """Leaf tensor with entries drawn uniformly from ``[low, high)``."""
        device = device if device is not None else default_device()
        return Tensor.from_storage(device.sample_uniform(shape, low, high), device)

    ########### Properties ###########
    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def ndim(self) -> int:
        return self.data.ndim

    def ghost(self) -> Ghost:
        """The (id, shape, dtype) record that backward ops keep instead of this tensor."""
        return Ghost(self.id, self.shape, self.dtype)

    def array(self) -> np.ndarray:
        """A copy of the data."""
        return self.data.copy()

    def item(self) -> Union[float, int]:
        return self.data.item()

    ########### Tape handling ###########
    def trace(self) -> "Tensor":
        """
        Start recording: return a handle sharing this tensor's storage and id, holding a
        fresh empty tape. Gradients computed from it are stored under this tensor's id.

        Returns:
            Tensor: The traced handle.
        """
        return Tensor.from_storage(
            self.data, self.device, self.id, OwnedTape(self.device)
        )

    def split_tape(self) -> Tuple["Tensor", Tape]:
        """
        Move the tape out of this handle.

        This handle is left without a tape, so using it again later contributes nothing
        to that tape. This is what keeps exactly one owner per tape.

        Returns:
            Tuple[Tensor, Tape]: A tapeless handle (same storage and id) and the tape.
        """
        tape, self.tape = self.tape, NONE_TAPE
        return Tensor.from_storage(self.data, self.device, self.id), tape

    def put_tape(self, tape: Tape) -> "Tensor":
        """
        Return a handle sharing this tensor's storage and id that owns ``tape``.

        Args:
            tape (Tape): The tape to attach.

        Returns:
            Tensor: The new handle.
        """
        return Tensor.from_storage(self.data, self.device, self.id, tape)

    def with_empty_tape(self) -> "Tensor":
        """
        A handle sharing storage and id with a new empty tape of the same kind.

        This is how a branch (e.g. the inner module of a residual connection) records
        separately before being merged back with this tensor's tape. This handle keeps
        its own tape.
        """
        return Tensor.from_storage(
            self.data, self.device, self.id, self.tape.empty_like()
        )

    def detach(self) -> "Tensor":
        """
        A new leaf (fresh id, no tape) sharing this tensor's storage.
        """
        return Tensor.from_storage(self.data, self.device)

    def backward(self) -> Gradients:
        """
        Compute the gradient of this scalar with respect to everything recorded on its tape.

        The tape is consumed: ops run once each in reverse insertion order, then the
        frozen gradient store is returned. Look results up by tensor (or id) with
        ``grads.get(t)``.

        A tensor without a tape records nothing, so the returned store is empty.

        Returns:
            Gradients: The populated, read-only gradient store.

        Raises:
            ShapeMismatch: If this tensor is not a scalar.
        """
        if self.shape != ():
            raise ShapeMismatch(
                "backward() can only be called on a scalar",
                op="backward",
                expected=(),
                actual=self.shape,
            )
        _, tape = self.split_tape()
        if not tape.is_recording:
            logger.debug("backward() on an untraced tensor, no gradients recorded")
            grads = Gradients(self.device)
            grads.freeze()
            return grads

        ghost = self.ghost()
        tape.try_alloc_grad(ghost)
        tape.add_backward_op(FillOnes(ghost))
        return tape.execute()

    ########### Binary ops ###########
    def __add__(self, other: Union["Tensor", float, int]) -> "Tensor":
        """
        Element-wise addition of two tensors (or a tensor and a scalar). Broadcasts.
        """
        if not isinstance(other, Tensor):
            return ScalarAdd.apply(self, scalar=other)
        return Add.apply(self, other)

    def __mul__(self, other: Union["Tensor", float, int]) -> "Tensor":
        r"""
        Element-wise multiplication of two tensors (or a tensor and a scalar).
        $$
        z = x \cdot y
        $$
        """
        if not isinstance(other, Tensor):
            return ScalarMul.apply(self, scalar=other)
        return Mul.apply(self, other)

    def __matmul__(self, other: "Tensor") -> "Tensor":
        """
        Matrix multiplication following ``np.matmul`` broadcasting rules.
        """
        return Matmul.apply(self, other)

    def __radd__(self, other: Union[float, int]) -> "Tensor":
        return self + other

    def __rmul__(self, other: Union[float, int]) -> "Tensor":
        return self * other

    def __neg__(self) -> "Tensor":
        return self * -1

    def __sub__(self, other: Union["Tensor", float, int]) -> "Tensor":
        if not isinstance(other, Tensor):
            return self + (-other)
        return Add.apply(self, -other)

    def __rsub__(self, other: Union[float, int]) -> "Tensor":
        return (-self) + other

    def __truediv__(self, other: Union[float, int]) -> "Tensor":
        if isinstance(other, Tensor):
            raise TypeError("division is only supported by a scalar")
        return self * (1.0 / other)

    ########### Unary ops ###########
    def exp(self) -> "Tensor":
        """Element-wise natural exponential."""
        return Exp.apply(self)

    def log(self) -> "Tensor":
        """Element-wise natural logarithm."""
        return Log.apply(self)

    ########### Reduction ops ###########
    def sum(
        self, axis: Optional[Union[int, Tuple[int, ...]]] = None, keepdims: bool = False
    ) -> "Tensor":
        """
        Sum of all elements, or along ``axis``.

        Examples:
            - shape (3, 4, 5), axis (1, 2), keepdims True  -> (3, 1, 1)
            - shape (3, 4, 5), axis (1, 2), keepdims False -> (3,)
            - shape (3, 4, 5), axis None, keepdims False  -> ()

        Args:
            axis (Optional[Union[int, Tuple[int, ...]]], optional): Axis or axes to sum over.
                If None, sums over all elements. Defaults to None.
            keepdims (bool, optional): Keep the reduced dimensions as size 1. Defaults to False.

        Returns:
            Tensor: The tensor with summed values.
        """
        return Sum.apply(self, axis=axis, keepdims=keepdims)

    def mean(
        self, axis: Optional[Union[int, Tuple[int, ...]]] = None, keepdims: bool = False
    ) -> "Tensor":
        r"""
        Mean of all elements, or along ``axis``:
            $$
            y = \frac{1}{N} \sum_{i \in A} x_i
            $$

        Args:
            axis (Optional[Union[int, Tuple[int, ...]]], optional): Axis or axes to average over.
                If None, averages over all elements. Defaults to None.
            keepdims (bool, optional): Keep the reduced dimensions as size 1. Defaults to False.

        Returns:
            Tensor: The tensor with mean values.
        """
        return Mean.apply(self, axis=axis, keepdims=keepdims)

    ########### Indexed ops ###########
    def select(
        self, index: Union["Tensor", np.ndarray, int, Sequence], axis: Optional[int] = None
    ) -> "Tensor":
        """
        Pick a single element along one axis for each index position, removing that axis.
        Equivalent to ``torch.select`` generalized to a per-row index.

        The index shape is the source shape up to the selected axis, optionally preceded
        by batch dims. For a source of shape ``(M, N, O)``:

        - axis 0: index shape ``()``
        - axis 1: index shape ``(M,)``
        - axis 2: index shape ``(M, N)``

        Example:
            >>> t = Tensor([[1.0, 2.0, 3.0], [-1.0, -2.0, -3.0]])
            >>> t.select([1, 1]).data
            array([ 2., -2.], dtype=float32)

        Args:
            index: Integer tensor or array-like, copied into the op.
            axis (Optional[int]): Axis to select from. Defaults to ``index.ndim``, or to the
                single axis the index fits once its extra leading dims are read as batch dims.

        Returns:
            Tensor: Tensor of shape ``index.shape + self.shape[axis + 1:]``.

        Raises:
            ShapeMismatch: If the index shape does not fit the axis (before any kernel runs).
            IndexOutOfRange: If an index value is outside ``[0, self.shape[axis])``.
            TypeError: If the index is not integer.
        """
        return Select.apply(self, index=index, axis=axis)

    def gather(
        self, index: Union["Tensor", np.ndarray, Sequence], axis: Optional[int] = None
    ) -> "Tensor":
        """
        Pick several elements along one axis, replacing that axis's extent with the index's
        last extent. Equivalent to ``torch.gather`` with the index shape derived from the axis.

        For a source of shape ``(M, N, O)`` the index shape is:

        - axis 0: ``(Z,)``
        - axis 1: ``(M, Z)``
        - axis 2: ``(M, N, Z)``

        The index may carry leading batch dims, e.g. gathering rows of a ``(V, E)``
        embedding matrix with a ``(B, S)`` index along axis 0 gives ``(B, S, E)``.

        Example:
            >>> t = Tensor([[10.0, 20.0], [30.0, 40.0], [50.0, 60.0]])
            >>> t.gather([0, 2]).data
            array([[10., 20.],
                   [50., 60.]], dtype=float32)

        Args:
            index: Integer tensor or array-like, copied into the op.
            axis (Optional[int]): Axis to gather along. Defaults to ``index.ndim - 1``, or to
                the single axis the index fits once its extra leading dims are read as batch dims.

        Returns:
            Tensor: Tensor of shape ``index.shape + self.shape[axis + 1:]``.

        Raises:
            ShapeMismatch: If the index shape does not fit the axis (before any kernel runs).
            IndexOutOfRange: If an index value is outside ``[0, self.shape[axis])``.
            TypeError: If the index is not integer.
        """
        return Gather.apply(self, index=index, axis=axis)

    def __repr__(self) -> str:
        return f"Tensor(data={self.data}, id={self.id}, tape={self.tape!r})"


"""
Binary Ops
"""


class Add(Function):
    """Element-wise addition of two tensors.
    See :func:`tapegrad.tensor.Tensor.__add__` function
    """

    def forward(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        self.x_shape = x.shape  # for backward unbroadcast
        self.y_shape = y.shape  # for backward unbroadcast
        return x + y

    def backward(self, grad: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Addition is linear: both inputs receive the incoming gradient, with the
        broadcast dimensions summed out.
        """
        return (
            Function.unbroadcast(grad, self.x_shape),
            Function.unbroadcast(grad, self.y_shape),
        )


class Mul(Function):
    """Element-wise multiplication of two tensors.
    See :func:`tapegrad.tensor.Tensor.__mul__` function
    """

    def forward(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        self.x = x
        self.y = y
        return x * y

    def backward(self, grad: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        r"""
        The gradients are computed as:

            $$
            \begin{align}
            \frac{\partial z}{\partial x} = y \\
            \frac{\partial z}{\partial y} = x
            \end{align}
            $$

        and then multiplied by the incoming gradient.
        """
        return (
            Function.unbroadcast(grad * self.y, self.x.shape),
            Function.unbroadcast(grad * self.x, self.y.shape),
        )


def _scalar_operand(x: np.ndarray, scalar: Union[float, int]) -> np.ndarray:
    # Float tensors keep their dtype; integer tensors promote only for a float scalar
    dtype = x.dtype if x.dtype.kind == "f" else np.result_type(x.dtype, scalar)
    return np.asarray(scalar, dtype=dtype)


class ScalarAdd(Function):
    """Adds a python scalar. See :func:`tapegrad.tensor.Tensor.__add__` function"""

    def forward(self, x: np.ndarray, scalar: float) -> np.ndarray:
        return x + _scalar_operand(x, scalar)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        return np.array(grad)


class ScalarMul(Function):
    """Multiplies by a python scalar. See :func:`tapegrad.tensor.Tensor.__mul__` function"""

    def forward(self, x: np.ndarray, scalar: float) -> np.ndarray:
        self.scalar = scalar
        return x * _scalar_operand(x, scalar)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        return grad * np.asarray(self.scalar, dtype=grad.dtype)


class Matmul(Function):
    """Matrix multiplication of two tensors.
    See :func:`tapegrad.tensor.Tensor.__matmul__` function
    """

    def forward(self, x: np.ndarray, y: np.ndarray) -> np.ndarray:
        self.x = x
        self.y = y
        return np.matmul(x, y)

    def backward(self, grad: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        r"""
        For $z = x \cdot y$:
            $$ \text{grad}_x = \text{grad} \cdot y^T $$
            $$ \text{grad}_y = x^T \cdot \text{grad} $$

        1-D operands are promoted to matrices the same way ``np.matmul`` does, and
        batch dims that were broadcast are summed out.
        """
        x, y = self.x, self.y
        # Promote 1-D operands: (n,) @ ... acts as (1, n), ... @ (n,) as (n, 1)
        x2 = x[np.newaxis, :] if x.ndim == 1 else x
        y2 = y[:, np.newaxis] if y.ndim == 1 else y
        g = grad
        # y first: for vector @ vector the incoming gradient is 0-d
        if y.ndim == 1:
            g = np.expand_dims(g, -1)
        if x.ndim == 1:
            g = np.expand_dims(g, -2)

        grad_x = np.matmul(g, np.swapaxes(y2, -1, -2))
        grad_y = np.matmul(np.swapaxes(x2, -1, -2), g)
        grad_x = Function.unbroadcast(grad_x, x2.shape).reshape(x.shape)
        grad_y = Function.unbroadcast(grad_y, y2.shape).reshape(y.shape)
        return grad_x, grad_y


"""
Unary Ops
"""


class Exp(Function):
    """See :func:`tapegrad.tensor.Tensor.exp` function"""

    def forward(self, x: np.ndarray) -> np.ndarray:
        self.out = np.exp(x)
        return self.out

    def backward(self, grad: np.ndarray) -> np.ndarray:
        return grad * self.out


class Log(Function):
    """See :func:`tapegrad.tensor.Tensor.log` function"""

    def forward(self, x: np.ndarray) -> np.ndarray:
        self.x = x
        return np.log(x)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        return grad / self.x


"""
Reduction Ops
"""


def _normalize_axes(
    axis: Optional[Union[int, Tuple[int, ...]]], ndim: int
) -> Optional[Tuple[int, ...]]:
    if axis is None:
        return None
    axes = (axis,) if isinstance(axis, int) else tuple(axis)
    return tuple(sorted(ax % ndim for ax in axes))


def _expand_reduced(
    grad: np.ndarray,
    x_shape: Tuple[int, ...],
    axes: Optional[Tuple[int, ...]],
    keepdims: bool,
) -> np.ndarray:
    """Broadcast the gradient of a reduction back to the input shape."""
    if axes is not None and not keepdims:
        # Re-insert the reduced axes as size 1, in increasing order so indices stay valid
        for ax in axes:
            grad = np.expand_dims(grad, ax)
    return np.broadcast_to(grad, x_shape).copy()


class Sum(Function):
    """Compute the sum of tensor elements.
    See :func:`tapegrad.tensor.Tensor.sum` function
    """

    def forward(
        self,
        x: np.ndarray,
        axis: Optional[Union[int, Tuple[int, ...]]] = None,
        keepdims: bool = False,
    ) -> np.ndarray:
        self.axes = _normalize_axes(axis, x.ndim)
        self.keepdims = keepdims
        self.x_shape = x.shape
        return np.sum(x, axis=self.axes, keepdims=keepdims)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        """
        Every input element contributes once to its sum, so the gradient is the incoming
        gradient broadcast back over the reduced axes.
        """
        return _expand_reduced(grad, self.x_shape, self.axes, self.keepdims)


class Mean(Function):
    """Compute the mean of tensor elements.
    See :func:`tapegrad.tensor.Tensor.mean` function
    """

    def forward(
        self,
        x: np.ndarray,
        axis: Optional[Union[int, Tuple[int, ...]]] = None,
        keepdims: bool = False,
    ) -> np.ndarray:
        self.axes = _normalize_axes(axis, x.ndim)
        self.keepdims = keepdims
        self.x_shape = x.shape
        return np.mean(x, axis=self.axes, keepdims=keepdims)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        r"""
        $$
        \frac{\partial \text{loss}}{\partial x} = \frac{\text{grad}}{N}
        $$

        where N is the number of elements averaged into each output.
        """
        if self.axes is None:
            num_elements = int(np.prod(self.x_shape))
        else:
            num_elements = int(np.prod([self.x_shape[ax] for ax in self.axes]))
        expanded = _expand_reduced(grad, self.x_shape, self.axes, self.keepdims)
        return expanded / np.asarray(num_elements, dtype=expanded.dtype)


"""
Indexed Ops
"""


def _as_index(index: Any) -> np.ndarray:
    """Copy an index (tensor or array-like) into an int64 array owned by the op."""
    arr = index.data if isinstance(index, Tensor) else np.asarray(index)
    if arr.dtype.kind not in "iu":
        raise TypeError(f"index must have an integer dtype, got {arr.dtype}")
    return np.array(arr, dtype=np.int64)


class Select(Function):
    """Shape-reducing indexed copy.
    See :func:`tapegrad.tensor.Tensor.select` function
    """

    def forward(self, x: np.ndarray, index: Any, axis: Optional[int] = None) -> np.ndarray:
        # Resolve shapes before the kernel runs
        self.index = _as_index(index)
        self.geometry: IndexedShape = remove_dim(x.shape, self.index.shape, axis)
        return self.device.select_forward(x, self.index, self.geometry.axis)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        """
        Scatter-add the output gradient into a zeroed buffer at the positions that were read.
        Positions read k times receive the sum of the k gradients; unread positions stay 0.
        """
        x = self.inputs[0]
        dx = self.device.alloc_zeros(x.shape, grad.dtype)
        self.device.select_backward(dx, self.index, grad, self.geometry.axis)
        return dx


class Gather(Function):
    """Rank-preserving indexed copy.
    See :func:`tapegrad.tensor.Tensor.gather` function
    """

    def forward(self, x: np.ndarray, index: Any, axis: Optional[int] = None) -> np.ndarray:
        self.index = _as_index(index)
        self.geometry: IndexedShape = replace_dim(x.shape, self.index.shape, axis)
        return self.device.gather_forward(x, self.index, self.geometry.axis)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        """
        Scatter-add counterpart of the forward copy. Duplicate indices accumulate,
        omitted ones receive exactly zero.
        """
        x = self.inputs[0]
        dx = self.device.alloc_zeros(x.shape, grad.dtype)
        self.device.gather_backward(dx, self.index, grad, self.geometry.axis)
        return dx
