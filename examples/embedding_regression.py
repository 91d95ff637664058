import logging

import numpy as np

from tapegrad import functional, nn, optim
from tapegrad.config_schema import DeviceConfig, OptimizerConfig
from tapegrad.device import Cpu
from tapegrad.logger import setup_logger
from tapegrad.tensor import Tensor

logger = logging.getLogger(__name__)

VOCAB_SIZE = 20
EMBEDDING_SIZE = 8
SEQ_LEN = 6
BATCH_SIZE = 32


class BagOfTokensRegressor(nn.Module):
    """
    Predict the average hidden score of a sequence of token ids.

    Each token id is looked up in an embedding table (a gather along axis 0), refined by a
    residual MLP, projected to a scalar and averaged over the sequence.
    """

    def __init__(self, device):
        super().__init__()
        self.embedding = nn.Embedding(VOCAB_SIZE, EMBEDDING_SIZE, device=device)
        self.mlp = nn.Residual(
            nn.Sequential(nn.Linear(EMBEDDING_SIZE, EMBEDDING_SIZE, device=device), nn.ReLU())
        )
        self.head = nn.Linear(EMBEDDING_SIZE, 1, device=device)

    def forward(self, ids):
        # ids: (batch_size, seq_len) -> (batch_size, seq_len, embedding_size)
        x = self.embedding(ids)
        x = self.mlp(x)
        # (batch_size, seq_len, 1) -> (batch_size, 1)
        return self.head(x).mean(axis=1)


def make_batch(rng, token_scores, vocab_size):
    ids = rng.integers(0, vocab_size, size=(BATCH_SIZE, SEQ_LEN))
    targets = token_scores[ids].mean(axis=1, keepdims=True)
    return Tensor(ids), targets


def train(steps=300, config=None):
    device = Cpu(DeviceConfig(seed=1337))
    rng = np.random.default_rng(0)
    # Half of the vocabulary never shows up in training, so its embeddings never move
    token_scores = rng.normal(size=VOCAB_SIZE)

    model = BagOfTokensRegressor(device)
    config = config or OptimizerConfig(lr=0.05, momentum=0.5)
    optimizer = optim.SGD.from_config(model.parameters, config)
    logger.info(f"Training {model.num_parameters()} parameters with {config}")

    losses = []
    unseen_before = model.embedding.weight.array()[VOCAB_SIZE // 2 :]
    for step in range(steps):
        ids, targets = make_batch(rng, token_scores, VOCAB_SIZE // 2)

        loss = functional.mean_squared_loss(model(ids.trace()), targets)
        grads = loss.backward()
        optimizer.step(grads)
        losses.append(loss.item())

        if step % 50 == 0 or step == steps - 1:
            logger.info(f"step {step:4d} | loss {loss.item():.4f}")

    unseen_after = model.embedding.weight.data[VOCAB_SIZE // 2 :]
    logger.info(
        f"Embeddings of unseen tokens unchanged: {np.array_equal(unseen_before, unseen_after)}"
    )
    return model, losses


if __name__ == "__main__":
    setup_logger()
    train()
