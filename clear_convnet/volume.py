# clear_convnet/volume.py

"""
Volume: the unit of data flowing between layers.

A Volume is a dense 3-D block of numbers (width x height x depth) that carries
two buffers of identical length:
   - `w`:  the activations (values produced by a forward pass)
   - `dw`: the gradients of the loss with respect to those activations

Both buffers are flat float64 NumPy arrays. Element (x, y, d) lives at
flat index  x + y * width + d * width * height,  so reshaping a buffer to
(depth, height, width) gives one 2-D slice per depth channel. Every layer
relies on this convention through `as_array()` / `grad_array()`.
"""

import numpy as np
from typing import Optional

from .errors import NetUsageError


class Volume:
    """
    Dense 3-D tensor with paired activation and gradient buffers.
    """

    def __init__(self, width: int, height: int, depth: int, fill: Optional[float] = None):
        """
        Args:
            width, height, depth: Positive dimensions, fixed for the lifetime of the volume.
            fill: Constant for every activation. If None, activations are drawn from a
                  normal distribution with std sqrt(1 / (width * height * depth)), which is
                  how layer parameters get their random starting point.
        """
        if width <= 0 or height <= 0 or depth <= 0:
            raise NetUsageError(f"Volume dimensions must be positive, got ({width}, {height}, {depth})")
        self.width = int(width)
        self.height = int(height)
        self.depth = int(depth)

        n = self.width * self.height * self.depth
        if fill is None:
            scale = np.sqrt(1.0 / n)
            self.w = np.random.randn(n) * scale
        else:
            self.w = np.full(n, float(fill))
        self.dw = np.zeros(n)

    @classmethod
    def from_array(cls, values) -> 'Volume':
        """
        Builds a volume from existing values.

        A 3-D array is read as (depth, height, width); a 1-D array becomes a
        1 x 1 x len(values) volume, which is the shape fully connected and
        loss layers work with.
        """
        values = np.asarray(values, dtype=float)
        if values.ndim == 1:
            depth, height, width = values.shape[0], 1, 1
        elif values.ndim == 3:
            depth, height, width = values.shape
        else:
            raise NetUsageError(f"Volume.from_array expects a 1-D or 3-D array, got {values.ndim}-D")
        vol = cls(width, height, depth, fill=0.0)
        vol.w[:] = values.reshape(-1)
        return vol

    # --- Shape helpers ---

    @property
    def length(self) -> int:
        return self.w.shape[0]

    @property
    def shape(self):
        """(width, height, depth), the order dimensions are passed around in."""
        return (self.width, self.height, self.depth)

    def index(self, x: int, y: int, d: int) -> int:
        return x + y * self.width + d * self.width * self.height

    def as_array(self) -> np.ndarray:
        """View of the activations shaped (depth, height, width). Writes go through to `w`."""
        return self.w.reshape(self.depth, self.height, self.width)

    def grad_array(self) -> np.ndarray:
        """View of the gradients shaped (depth, height, width)."""
        return self.dw.reshape(self.depth, self.height, self.width)

    # --- Element access ---

    def get(self, x: int, y: int, d: int) -> float:
        return self.w[self.index(x, y, d)]

    def set(self, x: int, y: int, d: int, value: float):
        self.w[self.index(x, y, d)] = value

    def add(self, x: int, y: int, d: int, value: float):
        self.w[self.index(x, y, d)] += value

    def get_grad(self, x: int, y: int, d: int) -> float:
        return self.dw[self.index(x, y, d)]

    def set_grad(self, x: int, y: int, d: int, value: float):
        self.dw[self.index(x, y, d)] = value

    def add_grad(self, x: int, y: int, d: int, value: float):
        self.dw[self.index(x, y, d)] += value

    # --- Whole-volume operations ---

    def zero_grad(self):
        """Clears the gradient buffer in place."""
        self.dw[:] = 0.0

    def set_const(self, value: float):
        self.w[:] = value

    def clone(self) -> 'Volume':
        vol = Volume(self.width, self.height, self.depth, fill=0.0)
        vol.w[:] = self.w
        return vol

    def clone_and_zero(self) -> 'Volume':
        return Volume(self.width, self.height, self.depth, fill=0.0)

    def _check_same_shape(self, other: 'Volume'):
        if other.shape != self.shape:
            raise NetUsageError(f"Volume shape mismatch: {self.shape} vs {other.shape}")

    def add_from(self, other: 'Volume'):
        """
        Sums another volume's activations into this one, in place.
        Used to average several forward passes (test-time augmentation).
        """
        self._check_same_shape(other)
        self.w += other.w

    def add_from_scaled(self, other: 'Volume', scale: float):
        self._check_same_shape(other)
        self.w += scale * other.w

    def augment(self, crop: int, dx: Optional[int] = None, dy: Optional[int] = None,
                flip_horizontally: bool = False) -> 'Volume':
        """
        Returns a crop x crop x depth copy of this volume, optionally mirrored.

        The crop starts at (dx, dy). When an offset is None it is drawn uniformly
        from [0, size - crop]; pass (size - crop) // 2 for a deterministic center
        crop at inference time. Source pixels that fall outside this volume read as 0.
        """
        if crop <= 0:
            raise NetUsageError(f"Crop size must be positive, got {crop}")
        if dx is None:
            dx = np.random.randint(0, max(self.width - crop, 0) + 1)
        if dy is None:
            dy = np.random.randint(0, max(self.height - crop, 0) + 1)

        src = self.as_array()
        out = np.zeros((self.depth, crop, crop))

        # Overlap between the crop window and the source, in source coordinates
        x0, x1 = max(dx, 0), min(dx + crop, self.width)
        y0, y1 = max(dy, 0), min(dy + crop, self.height)
        if x0 < x1 and y0 < y1:
            out[:, y0 - dy:y1 - dy, x0 - dx:x1 - dx] = src[:, y0:y1, x0:x1]

        if flip_horizontally:
            out = out[:, :, ::-1]

        return Volume.from_array(out)

    def __repr__(self):
        return f"Volume(width={self.width}, height={self.height}, depth={self.depth})"
