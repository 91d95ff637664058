"""
The gradient tape.

A tape is an append-only list of backward ops plus the gradient store they write
into. It is owned by the tensor most recently produced by an op; ops move the tape
out of their inputs, merge the input tapes, append themselves and hand the result to
their output. ``backward()`` drains it once, last op first.
"""

import enum
import itertools
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple, Union

from tapegrad.device import Cpu, default_device
from tapegrad.gradients import Ghost, Gradients

logger = logging.getLogger(__name__)

# Global insertion stamp: ops from merged tapes still drain in true reverse recording order
_op_counter = itertools.count()


class BackwardOp(ABC):
    """
    A deferred backward step.

    Implementations capture by value whatever they need (shapes, index arrays, saved
    forward values) and the ids of the tensors they read and write. ``replay`` must only
    add into gradient buffers; it never touches forward values.
    """

    @abstractmethod
    def replay(self, grads: Gradients) -> None:
        """
        Run this backward step against the gradient store.

        Args:
            grads (Gradients): The store being populated by the current drain.
        """
        raise NotImplementedError


class TapeState(enum.Enum):
    RECORDING = "recording"
    DRAINING = "draining"
    CONSUMED = "consumed"


class NoneTape:
    """
    The tape of a tensor that is not being traced.

    Recording on it is free: ops and gradient allocations are dropped.
    """

    is_recording = False

    def add_backward_op(self, op: BackwardOp) -> None:
        pass

    def try_alloc_grad(self, ghost: Ghost) -> None:
        pass

    def merge(self, other: "Tape") -> "Tape":
        return other

    def empty_like(self) -> "NoneTape":
        return self

    def __len__(self) -> int:
        return 0

    def __repr__(self) -> str:
        return "NoneTape()"


NONE_TAPE = NoneTape()


class OwnedTape:
    """
    A recording tape.

    Attributes:
        operations (List[Tuple[int, BackwardOp]]): ``(stamp, op)`` pairs. Stamps come from a
            process-wide counter, so they order ops by when they were recorded.
        gradients (Gradients): Buffers pre-allocated for every tensor an op touches.
        state (TapeState): RECORDING until drained, then CONSUMED.
    """

    is_recording = True

    def __init__(self, device: Optional[Cpu] = None) -> None:
        self.device = device if device is not None else default_device()
        self.operations: List[Tuple[int, BackwardOp]] = []
        self.gradients = Gradients(self.device)
        self.state = TapeState.RECORDING

    def _check_recording(self) -> None:
        if self.state is not TapeState.RECORDING:
            raise RuntimeError(f"tape is {self.state.value}, it can no longer record")

    def add_backward_op(self, op: BackwardOp) -> None:
        """
        Append a backward op.

        Raises:
            RuntimeError: If the tape is draining or was already consumed.
        """
        self._check_recording()
        self.operations.append((next(_op_counter), op))

    def try_alloc_grad(self, ghost: Ghost) -> None:
        """
        Allocate the gradient buffer of ``ghost`` now, during the forward pass, so an
        allocation failure surfaces where the op is built rather than in the middle of
        ``backward()``.
        """
        self._check_recording()
        self.gradients.get_or_alloc(ghost.id, ghost.shape, ghost.dtype)

    def merge(self, other: "Tape") -> "OwnedTape":
        """
        Combine the tapes of a binary op's operands.

        The result holds this tape's ops followed by ``other``'s. Both source tapes are
        emptied and marked consumed so no op can be replayed twice.

        Args:
            other (Tape): The right operand's tape.

        Returns:
            OwnedTape: The merged tape (``self`` if ``other`` does not record).
        """
        self._check_recording()
        if not other.is_recording or other is self:
            return self
        other._check_recording()

        merged = OwnedTape(self.device)
        merged.operations = self.operations + other.operations
        merged.gradients.merge(self.gradients)
        merged.gradients.merge(other.gradients)
        for source in (self, other):
            source.operations = []
            source.state = TapeState.CONSUMED
        logger.debug(f"Merged tapes into {len(merged.operations)} ops")
        return merged

    def empty_like(self) -> "OwnedTape":
        """A fresh recording tape on the same device."""
        return OwnedTape(self.device)

    def execute(self) -> Gradients:
        """
        Drain the tape: replay every op exactly once, in reverse insertion order.

        Every op's inputs were produced before the op itself was recorded, so reverse
        insertion order is a valid reverse topological order. Ordering by stamp rather than
        by list position keeps this true after merges, e.g. when a residual branch recorded
        on its own tape is merged in front of the trunk that produced its input.

        Returns:
            Gradients: The populated, frozen gradient store.

        Raises:
            RuntimeError: If the tape was already drained.
            Exception: Whatever a backward op raises. The traversal stops, the tape is
                consumed and its partially written store is discarded.
        """
        self._check_recording()
        self.state = TapeState.DRAINING
        operations, self.operations = self.operations, []
        gradients = self.gradients
        logger.debug(f"Replaying {len(operations)} backward ops")
        try:
            for _, op in sorted(operations, key=lambda entry: entry[0], reverse=True):
                op.replay(gradients)
        except Exception:
            logger.debug("Backward aborted, discarding partial gradients")
            self.gradients = Gradients(self.device)
            raise
        finally:
            self.state = TapeState.CONSUMED
        gradients.freeze()
        self.gradients = Gradients(self.device)
        return gradients

    def __len__(self) -> int:
        return len(self.operations)

    def __repr__(self) -> str:
        return f"OwnedTape(num_ops={len(self.operations)}, state={self.state.value})"


Tape = Union[NoneTape, OwnedTape]
