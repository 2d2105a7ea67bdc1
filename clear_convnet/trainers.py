# clear_convnet/trainers.py

"""
Trainers drive one sample per `train(x, y)` call:

    forward(x, is_training=True) -> loss layer backward(y) -> reverse backward

Parameter gradients accumulate inside the layers across calls; every
`batch_size` calls the trainer applies its update rule to every
parameter/gradient pair of the Net and clears the gradients, which starts the
next batch from zero. L1/L2 weight decay is added to the gradient right
before the update and reported separately from the data (cost) loss.
"""

import logging
import time
from typing import Dict, List

import numpy as np

from .errors import NetUsageError
from .net import Net
from .volume import Volume


class Trainer:
    """
    Base class holding the batching, decay and bookkeeping shared by all optimizers.
    Subclasses implement `_update_pair`.
    """

    def __init__(self, net: Net, batch_size: int = 1, l1_decay: float = 0.0, l2_decay: float = 0.0):
        """
        Args:
            net: The Net to train. It is updated in place and can outlive the trainer.
            batch_size: Number of samples whose gradients are summed before an update.
            l1_decay: L1 regularization strength.
            l2_decay: L2 regularization strength.
        """
        if batch_size < 1:
            raise NetUsageError(f"batch_size must be >= 1, got {batch_size}")
        self.net = net
        self.batch_size = int(batch_size)
        self.l1_decay = float(l1_decay)
        self.l2_decay = float(l2_decay)

        self.k = 0  # samples seen
        self.optimizer_state: List[Dict[str, np.ndarray]] = []

        # Stats of the latest train() call
        self.cost_loss = 0.0
        self.l1_decay_loss = 0.0
        self.l2_decay_loss = 0.0
        self.forward_time = 0.0
        self.backward_time = 0.0

    @property
    def loss(self) -> float:
        return self.cost_loss + self.l1_decay_loss + self.l2_decay_loss

    def train(self, x: Volume, y) -> Dict[str, float]:
        """
        Runs one training step on a single sample.

        Args:
            x: Input volume.
            y: Target for the net's loss layer (class label or target vector).

        Returns:
            Dict with 'cost_loss', 'l1_decay_loss', 'l2_decay_loss', 'loss',
            'forward_time' and 'backward_time' (seconds).
        """
        start = time.perf_counter()
        self.net.forward(x, is_training=True)
        self.forward_time = time.perf_counter() - start

        start = time.perf_counter()
        self.cost_loss = self.net.backward(y)
        self.backward_time = time.perf_counter() - start

        if not np.isfinite(self.cost_loss):
            logging.warning(f"Non-finite cost loss ({self.cost_loss}) at sample {self.k}. Check weights/inputs.")

        self.l1_decay_loss = 0.0
        self.l2_decay_loss = 0.0
        self.k += 1
        if self.k % self.batch_size == 0:
            self._apply_update()

        return {
            'cost_loss': self.cost_loss,
            'l1_decay_loss': self.l1_decay_loss,
            'l2_decay_loss': self.l2_decay_loss,
            'loss': self.loss,
            'forward_time': self.forward_time,
            'backward_time': self.backward_time,
        }

    def _apply_update(self):
        pairs = self.net.get_parameters_and_gradients()
        if not self.optimizer_state:
            # Lazily sized to the Net; pairs come back in the same order every call
            self.optimizer_state = [self._init_state(pg.parameters) for pg in pairs]
        elif len(self.optimizer_state) != len(pairs):
            raise NetUsageError("Net parameters changed since the trainer was created")

        for pg, state in zip(pairs, self.optimizer_state):
            p, g = pg.parameters, pg.gradients
            l1 = self.l1_decay * pg.l1_decay_mul
            l2 = self.l2_decay * pg.l2_decay_mul
            self.l1_decay_loss += l1 * float(np.sum(np.abs(p)))
            self.l2_decay_loss += l2 * float(np.sum(p * p)) / 2

            gradient = (l2 * p + l1 * np.sign(p) + g) / self.batch_size
            p += self._update_pair(gradient, state)
            g[:] = 0.0  # start the next batch from zero

        logging.debug(f"Applied update after {self.k} samples "
                      f"(l1 decay loss {self.l1_decay_loss:.6f}, l2 decay loss {self.l2_decay_loss:.6f})")

    def _init_state(self, parameters: np.ndarray) -> Dict[str, np.ndarray]:
        return {}

    def _update_pair(self, gradient: np.ndarray, state: Dict[str, np.ndarray]) -> np.ndarray:
        """Returns the step to add to the parameters, updating `state` in place."""
        raise NotImplementedError("Each trainer must implement its own update rule.")


class AdadeltaTrainer(Trainer):
    """
    Adadelta: per-parameter step sizes from running averages of squared
    gradients (E[g^2]) and squared updates (E[dx^2]); no learning rate.

        E[g^2]  = ro * E[g^2]  + (1 - ro) * g^2
        dx      = -sqrt((E[dx^2] + eps) / (E[g^2] + eps)) * g
        E[dx^2] = ro * E[dx^2] + (1 - ro) * dx^2
    """

    def __init__(self, net: Net, batch_size: int = 1, l1_decay: float = 0.0, l2_decay: float = 0.0,
                 ro: float = 0.95, eps: float = 1e-6):
        super().__init__(net, batch_size, l1_decay, l2_decay)
        self.ro = float(ro)
        self.eps = float(eps)

    def _init_state(self, parameters):
        return {'gsum': np.zeros_like(parameters), 'xsum': np.zeros_like(parameters)}

    def _update_pair(self, gradient, state):
        gsum, xsum = state['gsum'], state['xsum']
        gsum[:] = self.ro * gsum + (1 - self.ro) * gradient * gradient
        dx = -np.sqrt((xsum + self.eps) / (gsum + self.eps)) * gradient
        xsum[:] = self.ro * xsum + (1 - self.ro) * dx * dx
        return dx


class SgdTrainer(Trainer):
    """
    Stochastic gradient descent with optional classical momentum.
    """

    def __init__(self, net: Net, batch_size: int = 1, l1_decay: float = 0.0, l2_decay: float = 0.0,
                 learning_rate: float = 0.01, momentum: float = 0.9):
        super().__init__(net, batch_size, l1_decay, l2_decay)
        self.learning_rate = float(learning_rate)
        self.momentum = float(momentum)

    def _init_state(self, parameters):
        return {'velocity': np.zeros_like(parameters)}

    def _update_pair(self, gradient, state):
        if self.momentum > 0.0:
            velocity = state['velocity']
            velocity[:] = self.momentum * velocity - self.learning_rate * gradient
            return velocity.copy()
        return -self.learning_rate * gradient
