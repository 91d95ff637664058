import logging
from abc import abstractmethod
from typing import Any, Dict, Optional, Union

import numpy as np

from tapegrad.device import Cpu, default_device
from tapegrad.functional import relu
from tapegrad.gradients import Gradients, UnusedTensors
from tapegrad.tensor import Tensor

logger = logging.getLogger(__name__)


class Module:
    """
    Base class for all neural network modules.

    This class registers parameters, submodules and states on attribute assignment and
    implements state dict management and the parameter update walk.

    A module never calls ``backward()`` itself. Its forward pass only pieces together
    tensor ops, so whatever tape the input carries flows through to the output. Feed a
    traced input (``x.trace()``) to record gradients for the parameters.

    Attributes:
        _parameters (Dict[str, Tensor]): Dictionary of trainable parameters.
        _modules (Dict[str, Module]): Dictionary of submodules.
        _states (Dict[str, Any]): Dictionary of non-trainable states/buffers.
    """

    def __init__(self, *args, **kwargs) -> None:
        self._parameters: Dict[str, Tensor] = {}
        self._modules: Dict[str, "Module"] = {}
        self._states: Dict[str, Any] = {}

    @abstractmethod
    def forward(self, x: Any) -> Tensor:
        """
        Perform the forward pass.

        Args:
            x (Any): Input data.

        Returns:
            Tensor: The output tensor, carrying the input's tape.

        Raises:
            NotImplementedError: If the method is not overridden by a subclass.
        """
        raise NotImplementedError

    def __call__(self, *args: Any, **kwargs: Any) -> Tensor:
        return self.forward(*args, **kwargs)

    def __setattr__(self, name: str, value: Any) -> None:
        """
        Override attribute setting to automatically register submodules, parameters, and states.

        Note:
            Private attributes (names starting with '_') are set normally.
        """
        if name.startswith("_"):
            super().__setattr__(name, value)
            return

        if isinstance(value, Module):
            self._modules[name] = value
        elif isinstance(value, Tensor):
            self._parameters[name] = value
        else:
            self._states[name] = value
            super().__setattr__(name, value)

    def __getattr__(self, name: str) -> Any:
        """
        Retrieve a parameter, submodule or state by name.

        Raises:
            AttributeError: If the attribute is not found.
        """
        for container in ("_parameters", "_modules", "_states"):
            values = self.__dict__.get(container, {})
            if name in values:
                return values[name]
        raise AttributeError(
            f"Module {self.__class__.__name__} has no attribute {name}"
        )

    @property
    def parameters(self) -> Dict[str, Tensor]:
        """
        Get a flattened dictionary of all trainable parameters from the module and its submodules.

        .. code-block:: json

            {
                "weight": "Tensor",
                "submodule1.weight": "Tensor"
            }

        Returns:
            Dict[str, Tensor]: A dictionary mapping parameter names to Tensor objects.
        """
        return {
            k: v
            for k, v in self._get_attr_nested("_parameters").items()
            if isinstance(v, Tensor)
        }

    @property
    def states(self) -> Dict[str, np.ndarray]:
        """
        Get a flattened dictionary of all non-trainable array states from the module and its submodules.
        """
        return {
            k: v
            for k, v in self._get_attr_nested("_states").items()
            if isinstance(v, np.ndarray)
        }

    def state_dict(self) -> Dict[str, Dict[str, Any]]:
        """
        Return a state dictionary of the module.

        .. code-block:: json

            {
                "parameters": { "weight": "np.array()", "bias": "np.array()" },
                "states": { "stateful_states": "np.array()" }
            }

        Returns:
            Dict[str, Dict[str, Any]]: The state dictionary, with copies of the raw arrays.
        """
        param_arrays = {k: v.array() for k, v in self.parameters.items()}
        return {"parameters": param_arrays, "states": self.states}

    def load_state_dict(self, state_dict: Dict[str, Any]) -> None:
        """
        Load the module's state from a state dictionary of the form returned by ``state_dict``.

        Parameters are updated in place, so their ids (and therefore any optimizer state
        and gradients keyed by them) stay valid.

        Args:
            state_dict (Dict[str, Any]): A dictionary containing the module's parameters and states.
        """
        if "parameters" in state_dict:
            self._set_attr_nested(
                "_parameters", state_dict["parameters"], is_parameter=True
            )
        if "states" in state_dict:
            self._set_attr_nested("_states", state_dict["states"], is_parameter=False)

    def num_parameters(self) -> int:
        """
        Calculate the total number of trainable parameters in the module and its submodules.

        Returns:
            int: The total number of parameters.
        """
        return sum(p.data.size for p in self.parameters.values())

    def update(
        self,
        optimizer: Any,
        gradients: Gradients,
        unused: Optional[UnusedTensors] = None,
    ) -> UnusedTensors:
        """
        Visit every parameter and let ``optimizer`` update it from ``gradients``.

        Parameters without a gradient are skipped and recorded in ``unused``.

        Args:
            optimizer (Optimizer): Applies the update rule to one parameter.
            gradients (Gradients): The frozen store returned by ``backward()``.
            unused (Optional[UnusedTensors], optional): Collector to extend. Defaults to a new one.

        Returns:
            UnusedTensors: Ids of the parameters that received no gradient.
        """
        unused = unused if unused is not None else UnusedTensors()
        for name, param in self.parameters.items():
            optimizer.update_param(name, param, gradients, unused)
        return unused

    def _get_attr_nested(self, attr_name: str, prefix: str = "") -> Dict[str, Any]:
        """
        Recursively collect items from the module and its submodules.

        Args:
            attr_name (str): The name of the attribute to collect (e.g., "_parameters" or "_states").
            prefix (str, optional): The prefix for naming. Defaults to "".

        Returns:
            Dict[str, Any]: A flattened dictionary mapping full attribute names to their values.
        """
        out = {}
        for k, v in getattr(self, attr_name).items():
            full_name = f"{prefix}.{k}" if prefix else k
            out[full_name] = v

        for sub_name, mod in self._modules.items():
            sub_prefix = f"{prefix}.{sub_name}" if prefix else sub_name
            out.update(mod._get_attr_nested(attr_name, prefix=sub_prefix))

        return out

    def _set_attr_nested(
        self, attr_name: str, flat_dict: Dict[str, Any], is_parameter: bool
    ) -> None:
        """
        Recursively update attributes in the module and its submodules.

        Args:
            attr_name (str): The attribute to update ("_parameters" or "_states").
            flat_dict (Dict[str, Any]): A dictionary mapping full attribute names to their new values.
            is_parameter (bool): True if updating trainable parameters, which are written in place.
        """
        for full_name, value in flat_dict.items():
            *path, var_name = full_name.split(".")
            module_ref = self
            for p in path:
                module_ref = module_ref._modules[p]

            container = getattr(module_ref, attr_name)
            if var_name not in container:
                container[var_name] = Tensor(value) if is_parameter else value
            elif is_parameter:
                # In place: the optimizer and the gradient store address parameters by id
                container[var_name].data[...] = value
            else:
                container[var_name] = value


class Sequential(Module):
    """
    Apply submodules one after another.

    Example:
        >>> model = Sequential(Linear(4, 8), ReLU(), Linear(8, 1))
        >>> out = model(Tensor(np.ones((2, 4))))
    """

    def __init__(self, *modules: Module) -> None:
        super().__init__()
        for module in modules:
            self.append(module)

    def append(self, module: Module) -> None:
        # Register under a string key so the module shows up in parameters and state dicts
        setattr(self, str(len(self._modules)), module)

    def __getitem__(self, idx: int) -> Module:
        return self._modules[str(idx)]

    def __len__(self) -> int:
        return len(self._modules)

    def __iter__(self):
        for idx in range(len(self)):
            yield self[idx]

    def forward(self, x: Tensor) -> Tensor:
        for module in self:
            x = module(x)
        return x


class Linear(Module):
    r"""
    A linear (fully connected) layer.

    This layer performs a linear transformation:
        $$
        y = xW + b
        $$

    where $W$ is the weight matrix of shape ``(input_size, output_size)`` and $b$ is the bias.
    Both are initialized uniformly in $[-1/\sqrt{input\_size}, 1/\sqrt{input\_size}]$.
    """

    def __init__(
        self, input_size: int, output_size: int, device: Optional[Cpu] = None
    ) -> None:
        """
        Initialize the Linear layer.

        Args:
            input_size (int): The size of the input features.
            output_size (int): The size of the output features.
            device (Optional[Cpu], optional): Device whose generator initializes the weights.
        """
        super().__init__(input_size, output_size)
        device = device if device is not None else default_device()
        bound = 1.0 / np.sqrt(input_size)
        self.weight = Tensor.uniform((input_size, output_size), -bound, bound, device)
        self.bias = Tensor.uniform((output_size,), -bound, bound, device)

    def forward(self, x: Union[Tensor, np.ndarray]) -> Tensor:
        """
        Compute the forward pass of the Linear layer.

        Args:
            x (Union[Tensor, np.ndarray]): Input of shape ``(..., input_size)``.

        Returns:
            Tensor: Output of shape ``(..., output_size)``, carrying ``x``'s tape.
        """
        if not isinstance(x, Tensor):
            weight = self._parameters["weight"]
            x = Tensor(x, device=weight.device, dtype=weight.dtype)

        logger.debug(f"Linear forward {x.shape=} {self._parameters['weight'].shape=}")
        return x @ self._parameters["weight"] + self._parameters["bias"]


class Embedding(Module):
    """
    Lookup table mapping integer ids to dense vectors.

    The lookup is a gather along axis 0 of the weight matrix, so the gradient of a row is
    the sum of the output gradients of every position that looked it up, and rows nobody
    looked up get exactly zero.
    """

    def __init__(
        self, input_size: int, embedding_size: int, device: Optional[Cpu] = None
    ) -> None:
        """
        Initialize the Embedding layer.

        Args:
            input_size (int): The size of the vocabulary.
            embedding_size (int): The size of the embedding vectors.
            device (Optional[Cpu], optional): Device whose generator initializes the weights.
        """
        super().__init__()
        device = device if device is not None else default_device()
        bound = 1.0 / np.sqrt(input_size)
        # weight.shape: (input_size, embedding_size)
        self.weight = Tensor.uniform((input_size, embedding_size), -bound, bound, device)

    def forward(self, x: Union[Tensor, np.ndarray]) -> Tensor:
        """
        Perform the forward pass of the Embedding layer.

        The index tensor's tape is moved onto the weight, so tracing the index
        (``model(ids.trace())``) is what records the weight's gradient.

        Args:
            x (Union[Tensor, np.ndarray]): Integer ids of any shape, e.g. (batch_size, seq_len),
                each in ``[0, input_size)``.

        Returns:
            Tensor: Output tensor of shape ``x.shape + (embedding_size,)``.

        Raises:
            IndexOutOfRange: If an id is outside the vocabulary.
            TypeError: If the ids are not integers.
        """
        if not isinstance(x, Tensor):
            x = Tensor(x, device=self._parameters["weight"].device)

        indices, tape = x.split_tape()
        weight = self._parameters["weight"].put_tape(tape)
        if indices.ndim == 0:
            return weight.select(indices, axis=0)
        return weight.gather(indices, axis=0)


class ReLU(Module):
    """Module wrapper around :func:`tapegrad.functional.relu`."""

    def forward(self, x: Tensor) -> Tensor:
        return relu(x)


class Residual(Module):
    """
    Residual connection around a submodule.

    $$
    H(x) = F(x) + x
    $$

    Paper: https://arxiv.org/abs/1512.03385

    ``F`` records on a fresh tape of its own (``x.with_empty_tape()``), and the add merges
    it back with the tape ``x`` still holds.
    """

    def __init__(self, module: Module) -> None:
        super().__init__()
        self.module = module

    def forward(self, x: Tensor) -> Tensor:
        return self.module(x.with_empty_tape()) + x
