from unittest import TestCase

import numpy as np
import torch  # for comparison

from tapegrad.device import Cpu
from tapegrad.errors import IndexOutOfRange, ShapeMismatch
from tapegrad.shapes import remove_dim, replace_dim
from tapegrad.tape import OwnedTape
from tapegrad.tensor import Tensor


class TestSelectGather(TestCase):
    def setUp(self) -> None:
        self.device = Cpu(seed=1337)
        self.vector = Tensor.randn((5,), device=self.device)
        self.matrix = Tensor.randn((4, 5), device=self.device)
        self.cube = Tensor.randn((2, 3, 4), device=self.device)


class TestSelect(TestSelectGather):
    def test_select_1d(self):
        t = self.vector
        r = t.trace().select(Tensor(0))
        assert r.shape == ()
        assert r.item() == t.data[0]

        grads = r.exp().backward()
        expected = np.zeros(5, dtype=np.float32)
        expected[0] = np.exp(t.data[0])
        np.testing.assert_allclose(grads.get(t), expected, rtol=1e-6)

    def test_select_last_2d(self):
        t = Tensor([[1.0, 2.0, 3.0], [-1.0, -2.0, -3.0]], device=self.device)
        r = t.trace().select(Tensor([1, 1]))
        assert np.array_equal(r.data, [2.0, -2.0])

        grads = r.mean().backward()
        assert np.array_equal(grads.get(t), [[0.0, 0.5, 0.0], [0.0, 0.5, 0.0]])

    def test_select_3d_axis_0(self):
        t = self.cube
        r = t.trace().select(0)
        assert np.array_equal(r.data, t.data[0])

        grads = r.exp().mean().backward()
        expected = np.zeros((2, 3, 4), dtype=np.float32)
        expected[0] = np.exp(t.data[0]) / 12.0
        np.testing.assert_allclose(grads.get(t), expected, rtol=1e-5)

    def test_select_3d_axis_1(self):
        t = self.cube
        r = t.trace().select([1, 2])
        sub_t = np.stack([t.data[0, 1], t.data[1, 2]])
        assert np.array_equal(r.data, sub_t)

        grads = r.exp().mean().backward()
        sub_g = np.exp(sub_t) / 8.0
        expected = np.zeros((2, 3, 4), dtype=np.float32)
        expected[0, 1] = sub_g[0]
        expected[1, 2] = sub_g[1]
        np.testing.assert_allclose(grads.get(t), expected, rtol=1e-5)

    def test_select_3d_axis_2(self):
        t = self.cube
        index = [[2, 3, 2], [1, 1, 0]]
        r = t.trace().select(index)
        sub_t = np.array(
            [
                [t.data[0, 0, 2], t.data[0, 1, 3], t.data[0, 2, 2]],
                [t.data[1, 0, 1], t.data[1, 1, 1], t.data[1, 2, 0]],
            ]
        )
        assert np.array_equal(r.data, sub_t)

        grads = r.exp().mean().backward()
        sub_g = np.exp(sub_t) / 6.0
        expected = np.zeros((2, 3, 4), dtype=np.float32)
        for i in range(2):
            for j in range(3):
                expected[i, j, index[i][j]] = sub_g[i, j]
        np.testing.assert_allclose(grads.get(t), expected, rtol=1e-5)

    def test_select_negative_axis(self):
        index = np.array([[2, 3, 2], [1, 1, 0]])
        by_default = self.cube.select(index)
        by_negative = self.cube.select(index, axis=-1)
        assert np.array_equal(by_default.data, by_negative.data)

    def test_select_with_batch_dims(self):
        t = Tensor([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]], device=self.device)
        # Three batches of one column per row
        index = np.array([[0, 2], [1, 1], [2, 1]])
        r = t.trace().select(index, axis=1)
        assert r.shape == (3, 2)
        assert np.array_equal(r.data, [[1.0, 6.0], [2.0, 5.0], [3.0, 5.0]])

        grads = r.sum().backward()
        assert np.array_equal(grads.get(t), [[1.0, 1.0, 1.0], [0.0, 2.0, 1.0]])

    def test_select_matches_torch_gather(self):
        index = np.array([[2, 3, 2], [1, 1, 0]])
        r = self.cube.trace().select(index)
        weights = Tensor.randn(r.shape, device=self.device)
        grads = (r * weights).sum().backward()

        cube_torch = torch.tensor(self.cube.data, requires_grad=True)
        r_torch = torch.gather(cube_torch, -1, torch.tensor(index)[..., None]).squeeze(-1)
        (r_torch * torch.tensor(weights.data)).sum().backward()

        np.testing.assert_allclose(r.data, r_torch.numpy())
        np.testing.assert_allclose(grads.get(self.cube), cube_torch.grad.numpy(), rtol=1e-6)


class TestGather(TestSelectGather):
    def test_gather_1d(self):
        t = self.vector
        r = t.trace().gather(Tensor([0, 1, 1, 3]))
        assert np.array_equal(r.data, t.data[[0, 1, 1, 3]])

        grads = r.exp().mean().backward()
        e = np.exp(t.data)
        expected = np.array([e[0] / 4, 2 * e[1] / 4, 0.0, e[3] / 4, 0.0], dtype=np.float32)
        np.testing.assert_allclose(grads.get(t), expected, rtol=1e-5)

    def test_gather_1d_fewer_than_extent(self):
        t = self.vector
        r = t.trace().gather([0, 3])
        assert np.array_equal(r.data, t.data[[0, 3]])

        grads = r.mean().backward()
        assert np.array_equal(grads.get(t), [0.5, 0.0, 0.0, 0.5, 0.0])

    def test_gather_1d_more_than_extent(self):
        t = self.vector
        index = [0, 1, 2, 3, 4, 2, 4, 4]
        r = t.trace().gather(index)
        assert np.array_equal(r.data, t.data[index])

        grads = r.mean().backward()
        np.testing.assert_allclose(
            grads.get(t), np.array([1.0, 1.0, 2.0, 1.0, 3.0], dtype=np.float32) / 8.0
        )

    def test_gather_rows_with_batch_dims(self):
        t = self.matrix
        r = t.trace().gather([[2, 0, 3], [0, 0, 3]], axis=0)
        assert r.shape == (2, 3, 5)
        assert np.array_equal(r.data[0], t.data[[2, 0, 3]])
        assert np.array_equal(r.data[1], t.data[[0, 0, 3]])

        grads = r.sum().backward()
        expected = np.repeat(np.array([[3.0], [0.0], [1.0], [2.0]], dtype=np.float32), 5, axis=1)
        assert np.array_equal(grads.get(t), expected)

    def test_gather_rows_without_axis(self):
        # (2, 3) cannot be (4, Z), so the leading dim is read as a batch dim along axis 0
        t = self.matrix
        r = t.trace().gather(Tensor([[2, 0, 3], [0, 0, 3]]))
        assert r.shape == (2, 3, 5)
        assert np.array_equal(r.data[1], t.data[[0, 0, 3]])

        grads = r.sum().backward()
        expected = np.repeat(np.array([[3.0], [0.0], [1.0], [2.0]], dtype=np.float32), 5, axis=1)
        assert np.array_equal(grads.get(t), expected)

    def test_select_rows_without_axis(self):
        r = self.matrix.trace().select([[3, 1], [1, 0], [2, 2]])
        assert r.shape == (3, 2, 5)
        assert np.array_equal(r.data[2, 0], self.matrix.data[2])
        grads = r.sum().backward()
        assert np.array_equal(grads.get(self.matrix)[:, 0], [1.0, 2.0, 2.0, 1.0])

    def test_gather_last_axis_matches_torch(self):
        index = np.array([[[3, 0], [1, 1], [2, 3]], [[0, 0], [3, 2], [1, 0]]])
        r = self.cube.trace().gather(index)
        assert r.shape == (2, 3, 2)
        grads = r.exp().sum().backward()

        cube_torch = torch.tensor(self.cube.data, requires_grad=True)
        r_torch = torch.gather(cube_torch, 2, torch.tensor(index))
        r_torch.exp().sum().backward()

        np.testing.assert_allclose(r.data, r_torch.numpy())
        np.testing.assert_allclose(grads.get(self.cube), cube_torch.grad.numpy(), rtol=1e-5)

    def test_gather_middle_axis(self):
        # (2, 3, 4) along axis 1 with 5 picks per leading row -> (2, 5, 4)
        index = np.array([[0, 2, 2, 1, 0], [1, 1, 1, 1, 1]])
        r = self.cube.trace().gather(index)
        assert r.shape == (2, 5, 4)
        assert np.array_equal(r.data[0], self.cube.data[0][index[0]])
        assert np.array_equal(r.data[1], self.cube.data[1][index[1]])

        grads = r.sum().backward()
        counts = np.array([[2, 1, 2], [0, 5, 0]], dtype=np.float32)
        assert np.array_equal(grads.get(self.cube), np.repeat(counts[..., None], 4, axis=-1))

    def test_embedding_lookup_matches_torch(self):
        embeddings = Tensor(
            [
                [1.0, 2.0],  # id 0
                [3.0, 4.0],  # id 1
                [5.0, 6.0],  # id 2
            ],
            device=self.device,
        )
        indices = np.array([[1, 1], [1, 1]])
        gathered = embeddings.trace().gather(indices, axis=0)

        embeddings_torch = torch.tensor(embeddings.data, requires_grad=True)
        gathered_torch = embeddings_torch[indices]
        assert gathered.shape == tuple(gathered_torch.shape)

        # Gradient that varies by position
        grad = np.array([[[1.0, 1.0], [2.0, 2.0]], [[3.0, 3.0], [4.0, 4.0]]], dtype=np.float32)
        grads = (gathered * Tensor(grad)).sum().backward()
        (gathered_torch * torch.tensor(grad)).sum().backward()

        assert np.allclose(grads.get(embeddings), embeddings_torch.grad.numpy())
        assert np.array_equal(grads.get(embeddings)[[0, 2]], np.zeros((2, 2)))

    def test_empty_index(self):
        r = self.vector.trace().gather(np.zeros((0,), dtype=np.int64))
        assert r.shape == (0,)
        grads = r.sum().backward()
        assert np.array_equal(grads.get(self.vector), np.zeros(5))


class TestScatterAddProperties(TestSelectGather):
    def test_gradient_is_sum_over_reads(self):
        rng = np.random.default_rng(0)
        index = rng.integers(0, 4, size=(3, 7))
        weights = Tensor.randn((3, 7, 5), device=self.device)

        grads = (self.matrix.trace().gather(index, axis=0) * weights).sum().backward()

        expected = np.zeros((4, 5), dtype=np.float32)
        for b in range(3):
            for z in range(7):
                expected[index[b, z]] += weights.data[b, z]
        np.testing.assert_allclose(grads.get(self.matrix), expected, rtol=1e-5, atol=1e-6)

    def test_unread_positions_are_exactly_zero(self):
        grads = self.cube.trace().select([[3, 3, 3], [0, 0, 0]]).exp().sum().backward()
        g = grads.get(self.cube)
        assert np.all(g[0, :, :3] == 0.0)
        assert np.all(g[1, :, 1:] == 0.0)
        assert np.all(g[0, :, 3] > 0.0)

    def test_scatter_adds_into_existing_gradient(self):
        traced = self.vector.trace()
        picked = traced.with_empty_tape().gather([4, 4, 0]).sum()
        grads = (picked + (traced * 2.0).sum()).backward()
        assert np.array_equal(grads.get(self.vector), [3.0, 2.0, 2.0, 2.0, 4.0])

    def test_same_index_twice_is_deterministic(self):
        index = np.array([[0, 0, 0, 3, 3, 1]])
        weights = Tensor.randn((1, 6, 5), device=self.device)
        first = (self.matrix.trace().gather(index, axis=0) * weights).sum().backward()
        second = (self.matrix.trace().gather(index, axis=0) * weights).sum().backward()
        assert np.array_equal(first.get(self.matrix), second.get(self.matrix))


class TestIndexValidation(TestSelectGather):
    def test_out_of_range_raises(self):
        with self.assertRaises(IndexOutOfRange) as ctx:
            self.vector.gather([0, 5])
        assert ctx.exception.value == 5
        assert ctx.exception.extent == 5
        assert ctx.exception.axis == 0
        assert isinstance(ctx.exception, IndexError)

    def test_negative_index_is_not_wrapped(self):
        with self.assertRaises(IndexOutOfRange) as ctx:
            self.matrix.select([0, -1, 2, 3])
        assert ctx.exception.value == -1
        assert ctx.exception.axis == 1

    def test_non_integer_index_raises(self):
        with self.assertRaises(TypeError):
            self.vector.gather([0.0, 1.0])
        with self.assertRaises(TypeError):
            self.vector.select(Tensor(1.0))

    def test_index_is_captured_by_value(self):
        index = np.array([0, 1])
        traced = self.vector.trace()
        r = traced.gather(index)
        index[:] = 4
        grads = r.sum().backward()
        assert np.array_equal(grads.get(self.vector), [1.0, 1.0, 0.0, 0.0, 0.0])

    def test_shape_mismatch_before_kernel(self):
        traced = self.cube.trace()
        tape = traced.tape
        with self.assertRaises(ShapeMismatch):
            # select axis 1 of (2, 3, 4) needs an index of shape (2,)
            traced.select([0, 1, 2], axis=1)
        with self.assertRaises(ShapeMismatch):
            traced.gather([[0, 1]], axis=2)
        # Construction failed, so the input still owns its tape
        assert traced.tape is tape
        assert isinstance(tape, OwnedTape)
        assert len(tape) == 0

    def test_select_from_scalar(self):
        with self.assertRaises(ShapeMismatch):
            Tensor(1.0).select(0)


class TestShapeResolution(TestCase):
    def test_remove_dim(self):
        assert remove_dim((2, 3, 4), ()) == (0, 0, (3, 4))
        assert remove_dim((2, 3, 4), (2,)) == (1, 0, (2, 4))
        assert remove_dim((2, 3, 4), (2, 3)) == (2, 0, (2, 3))
        assert remove_dim((4, 5), (2, 3), axis=0) == (0, 2, (2, 3, 5))
        assert remove_dim((2, 3, 4), (7, 2, 3), axis=-1) == (2, 1, (7, 2, 3))

    def test_remove_dim_infers_batched_axis(self):
        assert remove_dim((4, 5), (2, 3)) == (0, 2, (2, 3, 5))
        assert remove_dim((2, 3), (2, 3)) == (0, 2, (2, 3, 3))
        # The unbatched reading wins when it fits
        assert remove_dim((2, 3), (2,)) == (1, 0, (2,))

    def test_remove_dim_errors(self):
        with self.assertRaises(ShapeMismatch) as ctx:
            # batched along axis 0 or along axis 1
            remove_dim((3, 4), (2, 3))
        assert "pass axis explicitly" in str(ctx.exception)
        with self.assertRaises(ShapeMismatch) as ctx:
            remove_dim((2, 3, 4), (3,), axis=1)
        assert ctx.exception.expected == (2,)
        assert ctx.exception.actual == (3,)
        with self.assertRaises(ShapeMismatch):
            remove_dim((2, 3), (), axis=2)

    def test_replace_dim(self):
        assert replace_dim((5,), (8,)) == (0, 0, (8,))
        assert replace_dim((4, 5), (2,)) == (0, 0, (2, 5))
        assert replace_dim((2, 3, 4), (2, 7)) == (1, 0, (2, 7, 4))
        assert replace_dim((2, 3, 4), (2, 3, 1)) == (2, 0, (2, 3, 1))
        assert replace_dim((4, 5), (2, 3), axis=0) == (0, 1, (2, 3, 5))

    def test_replace_dim_infers_batched_axis(self):
        assert replace_dim((4, 5), (2, 3)) == (0, 1, (2, 3, 5))
        assert replace_dim((5,), (2, 3)) == (0, 1, (2, 3))

    def test_replace_dim_errors(self):
        with self.assertRaises(ShapeMismatch):
            replace_dim((4, 5), ())
        with self.assertRaises(ShapeMismatch):
            # batched along axis 0 or along axis 1
            replace_dim((2, 5), (2, 2, 3))
        with self.assertRaises(ShapeMismatch):
            replace_dim((), (1,))
