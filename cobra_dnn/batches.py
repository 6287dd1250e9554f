import numpy as np

from .errors import ConfigurationError, ShapeMismatch


class SamplesBatch:
    """A batch of inputs with their expected outputs, one sample per row"""

    def __init__(self, x, y):
        x = np.ascontiguousarray(x, dtype=np.float32)
        y = np.ascontiguousarray(y, dtype=np.float32)
        if x.ndim == 1:
            x = x.reshape(1, -1)
        if y.ndim == 1:
            y = y.reshape(1, -1)
        if x.shape[0] != y.shape[0]:
            raise ShapeMismatch(f"The batch has {x.shape[0]} inputs but {y.shape[0]} outputs")
        if x.shape[0] == 0:
            raise ShapeMismatch("A batch can't be empty")
        self.x = x.reshape(x.shape[0], -1)
        self.y = y.reshape(y.shape[0], -1)

    def __len__(self):
        return self.x.shape[0]


class BatchesCollection:
    """Splits a dataset into batches, and reshuffles the samples across them between epochs"""

    def __init__(self, x, y, size):
        if size <= 0:
            raise ConfigurationError("The batch size must be positive")
        dataset = SamplesBatch(x, y)
        self.x, self.y = dataset.x, dataset.y
        self.size = size
        self.batches = self._split()

    @classmethod
    def from_batches(cls, batches):
        batches = list(batches)
        if not batches:
            raise ConfigurationError("The collection needs at least one batch")
        x = np.concatenate([b.x for b in batches])
        y = np.concatenate([b.y for b in batches])
        return cls(x, y, len(batches[0]))

    def _split(self):
        return [SamplesBatch(self.x[i:i + self.size], self.y[i:i + self.size])
                for i in range(0, self.x.shape[0], self.size)]

    @property
    def count(self):
        """Total number of samples"""
        return self.x.shape[0]

    def cross_shuffle(self):
        order = np.random.permutation(self.count)
        self.x, self.y = self.x[order], self.y[order]
        self.batches = self._split()

    def __len__(self):
        return len(self.batches)

    def __iter__(self):
        return iter(self.batches)
