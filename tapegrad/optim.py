import logging
from abc import abstractmethod
from collections import defaultdict
from typing import Any, Dict

import numpy as np

from tapegrad.config_schema import OptimizerConfig
from tapegrad.gradients import Gradients, UnusedTensors
from tapegrad.tensor import Tensor

logger = logging.getLogger(__name__)


class Optimizer:
    """
    Base Optimizer Class.

    Gradients do not live on the parameters: ``step`` reads them from the store that
    ``backward()`` returned, looked up by parameter id.

    Usage Example:

    .. code-block:: python

        optimizer = SGD(model.parameters, lr=0.01, momentum=0.9)
        for x, y in dataset:
            loss = mean_squared_loss(model(x.trace()), y)
            grads = loss.backward()
            unused = optimizer.step(grads)
    """

    def __init__(
        self,
        model_parameters: Dict[str, Tensor],
        lr: float,
        **kwargs: Any,
    ) -> None:
        """
        Initialize the Base Optimizer. Usually you wouldn't directly initialize this, but rather initialize a
        specific Optimizer subclass (e.g. SGD)

        Args:
            model_parameters (Dict[str, Tensor]): A flattened dictionary of model parameters.
            lr (float): The learning rate.
            **kwargs: Additional hyperparameters.
        """
        self._states: Dict[str, Any] = defaultdict(dict)
        self._hyperparams: Dict[str, Any] = {}
        # We assume this is a flattened named parameter dict
        # passed by calling Optimizer(model.parameters)
        self.model_parameters = model_parameters
        self._hyperparams["lr"] = lr
        self._states["timestep"] = 0

        for k, v in kwargs.items():
            self._hyperparams[k] = v

    @property
    def lr(self) -> float:
        return self._hyperparams["lr"]

    @lr.setter
    def lr(self, value: float) -> None:
        self._hyperparams["lr"] = value

    @property
    def timestep(self) -> int:
        """Number of completed ``step`` calls."""
        return self._states.get("timestep", 0)

    @timestep.setter
    def timestep(self, value: int) -> None:
        self._states["timestep"] = value

    def state_dict(self) -> Dict[str, Any]:
        """
        Return a dictionary representing the optimizer's state for checkpointing.

        The returned dictionary has the following structure:

        .. code-block:: json

            {
                "hyperparams": {
                    "lr": 0.01,
                    "momentum": 0.9
                },
                "states": {
                    "timestep": 3,
                    "momentum_buffer": {"module1.weight": "...", "module1.bias": "..."}
                }
            }

        Returns:
            Dict[str, Any]: The state dictionary of the optimizer.
        """
        return {
            "hyperparams": dict(self._hyperparams),
            "states": {
                key: dict(value) if isinstance(value, dict) else value
                for key, value in self._states.items()
            },
        }

    def load_state_dict(self, state_dict: Dict[str, Any]) -> None:
        """
        Load the optimizer state from a checkpoint.

        Args:
            state_dict (Dict[str, Any]): The state dictionary read from a checkpoint.
        """
        for k, v in state_dict["hyperparams"].items():
            self._hyperparams[k] = v

        self._states.clear()
        for state_key, name_dict in state_dict["states"].items():
            if state_key == "timestep":
                self._states["timestep"] = name_dict
            else:
                for param_name, val in name_dict.items():
                    if param_name in self.model_parameters:
                        self._states[state_key][param_name] = val
                    else:
                        logger.warning(
                            f"Skipping state for param {param_name} not found in current model"
                        )

    @staticmethod
    def _check_gradients(gradients: Gradients) -> None:
        if not gradients.frozen:
            raise RuntimeError(
                "optimizer needs the gradients returned by a completed backward()"
            )

    def update_param(
        self,
        name: str,
        param: Tensor,
        gradients: Gradients,
        unused: UnusedTensors,
    ) -> None:
        """
        Update a single parameter in place, or record it as unused if it has no gradient.

        Args:
            name (str): The parameter's name, which keys its optimizer state.
            param (Tensor): The parameter, updated in place.
            gradients (Gradients): The frozen store returned by ``backward()``.
            unused (UnusedTensors): Collector for parameters without a gradient.

        Raises:
            RuntimeError: If ``gradients`` is not the frozen result of ``backward()``.
        """
        self._check_gradients(gradients)
        grad = gradients.get(param)
        if grad is None:
            unused.add(param)
            return
        self._update(name, param, grad)

    @abstractmethod
    def _update(self, name: str, param: Tensor, grad: np.ndarray) -> None:
        """Apply the update rule to one parameter that has a gradient."""
        raise NotImplementedError

    def step(self, gradients: Gradients) -> UnusedTensors:
        """
        Perform a single optimization step over every parameter.

        Args:
            gradients (Gradients): The frozen store returned by ``backward()``.

        Returns:
            UnusedTensors: Ids of parameters that received no gradient and were left unchanged.

        Raises:
            RuntimeError: If ``gradients`` is not the frozen result of ``backward()``.
        """
        self._check_gradients(gradients)
        unused = UnusedTensors()
        for name, param in self.model_parameters.items():
            self.update_param(name, param, gradients, unused)
        self.timestep += 1

        if not unused.is_empty():
            names = [n for n, p in self.model_parameters.items() if p.id in unused]
            logger.warning(f"{len(unused)} parameter(s) received no gradient: {names}")
        return unused


class SGD(Optimizer):
    r"""
    Stochastic Gradient Descent (SGD) Optimizer, with optional momentum and L2 weight decay.

    For each parameter $p$ with gradient $g$:
        $$
        \begin{align}
        g &= g + \lambda p \\
        b &= \mu b + g \\
        p &= p - \eta b
        \end{align}
        $$

    where the momentum buffer $b$ starts as the first gradient (no dampening).
    With $\mu = 0$ this reduces to $p = p - \eta g$.
    """

    def __init__(
        self,
        model_parameters: Dict[str, Tensor],
        lr: float,
        momentum: float = 0.0,
        weight_decay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        """
        Initialize the SGD optimizer.

        Args:
            model_parameters (Dict[str, Tensor]): Model parameters to optimize.
            lr (float): The learning rate.
            momentum (float, optional): Momentum factor. Defaults to 0.0.
            weight_decay (float, optional): L2 penalty added to the gradient. Defaults to 0.0.
            **kwargs: Additional hyperparameters.
        """
        if lr < 0 or momentum < 0 or weight_decay < 0:
            raise ValueError(
                f"Invalid SGD hyperparameters: {lr=}, {momentum=}, {weight_decay=}"
            )
        super(SGD, self).__init__(
            model_parameters,
            lr=lr,
            momentum=momentum,
            weight_decay=weight_decay,
            **kwargs,
        )

    @classmethod
    def from_config(
        cls, model_parameters: Dict[str, Tensor], config: OptimizerConfig
    ) -> "SGD":
        """
        Build an SGD optimizer from an :class:`~tapegrad.config_schema.OptimizerConfig`.
        """
        return cls(
            model_parameters,
            lr=config.lr,
            momentum=config.momentum,
            weight_decay=config.weight_decay,
        )

    def _update(self, name: str, param: Tensor, grad: np.ndarray) -> None:
        g = grad
        if self._hyperparams["weight_decay"]:
            g = g + self._hyperparams["weight_decay"] * param.data

        momentum = self._hyperparams["momentum"]
        if momentum:
            buf = self._states["momentum_buffer"].get(name)
            if buf is None:
                buf = np.array(g)
            else:
                buf = momentum * buf + g
            self._states["momentum_buffer"][name] = buf
            g = buf

        param.data -= (self.lr * g).astype(param.dtype, copy=False)
