import pytest
import torch


@pytest.fixture(scope="session", autouse=True)
def patch_torch_numpy():
    """
    Monkey-patch torch.Tensor.numpy() so it always returns a detached CPU NumPy
    array, which lets tests call ``.grad.numpy()`` and ``out.numpy()`` directly.
    """
    old_numpy = torch.Tensor.numpy

    def new_numpy(t):
        t = t.detach()
        if t.is_cuda:
            t = t.cpu()
        return old_numpy(t)

    torch.Tensor.numpy = new_numpy

    yield

    torch.Tensor.numpy = old_numpy
