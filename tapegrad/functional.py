import logging
from typing import Union

import numpy as np

from tapegrad.tensor import Function, Tensor

logger = logging.getLogger(__name__)


########### Activation Functions ###############
def relu(x: Tensor) -> Tensor:
    """
    Applies the Rectified Linear Unit (ReLU) activation function.

    Args:
        x (Tensor): The input tensor.

    Returns:
        Tensor: The tensor after applying the ReLU function.
    """
    return Relu.apply(x)


def sigmoid(x: Tensor) -> Tensor:
    """
    Applies the sigmoid activation function.

    Args:
        x (Tensor): The input tensor.

    Returns:
        Tensor: The tensor after applying the sigmoid function.
    """
    return Sigmoid.apply(x)


def tanh(x: Tensor) -> Tensor:
    """
    Applies the hyperbolic tangent (tanh) activation function.

    Args:
        x (Tensor): The input tensor.

    Returns:
        Tensor: The tensor after applying the tanh function.
    """
    return Tanh.apply(x)


class Relu(Function):
    """
    Rectified Linear Unit (ReLU) activation function.

    The ReLU function is defined as:
        $$
        ReLU(x) = max(0, x)
        $$
    """

    def forward(self, x: np.ndarray) -> np.ndarray:
        self.mask = x > 0
        return np.maximum(x, 0)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        return grad * self.mask


class Sigmoid(Function):
    r"""
    Sigmoid activation function.

    The sigmoid function is defined as:
        $$
        sigmoid(x) = \frac{1}{1 + e^{-x}}
        $$
    """

    def forward(self, x: np.ndarray) -> np.ndarray:
        self.out = 1 / (1 + np.exp(np.clip(-x, -88.72, 88.72)))
        return self.out

    def backward(self, grad: np.ndarray) -> np.ndarray:
        return grad * self.out * (1 - self.out)


class Tanh(Function):
    r"""
    Hyperbolic tangent (tanh) activation function.

    The tanh function is defined as:
        $$
        tanh(x) = \frac{e^x - e^{-x}}{e^x + e^{-x}}
        $$
    """

    def forward(self, x: np.ndarray) -> np.ndarray:
        self.out = np.tanh(x)
        return self.out

    def backward(self, grad: np.ndarray) -> np.ndarray:
        """
        $$
        d(tanh(x))/dx = 1 - tanh(x)^2
        $$
        """
        return grad * (1 - self.out**2)


###################### Loss Functions #####################
class MeanSquaredLoss(Function):
    r"""
    Mean Squared Error (MSE) Loss.

    The MSE loss is defined as:
        $$
        MSE = \frac{1}{N} \sum (y_{pred} - y_{true})^2
        $$

    The target is captured by value and receives no gradient.
    """

    def forward(self, y_pred: np.ndarray, y_true: np.ndarray) -> np.ndarray:
        self.pred_shape = y_pred.shape
        self.diff = y_pred - np.asarray(y_true, dtype=y_pred.dtype)
        return np.mean(self.diff**2)

    def backward(self, grad: np.ndarray) -> np.ndarray:
        r"""
        $$
        \frac{\partial L}{\partial y_{pred}} = \frac{2}{N} (y_{pred} - y_{true})
        $$
        """
        scale = np.asarray(2.0 / self.diff.size, dtype=self.diff.dtype)
        return Function.unbroadcast(scale * self.diff * grad, self.pred_shape)


def mean_squared_loss(y_pred: Tensor, y_true: Union[Tensor, np.ndarray]) -> Tensor:
    """
    Computes the Mean Squared Error (MSE) loss.

    Args:
        y_pred (Tensor): Predicted values.
        y_true (Union[Tensor, np.ndarray]): True values, same shape as ``y_pred``.

    Returns:
        Tensor: The scalar MSE loss, carrying ``y_pred``'s tape.
    """
    if isinstance(y_true, Tensor):
        y_true = y_true.data
    return MeanSquaredLoss.apply(y_pred, y_true=np.array(y_true))
