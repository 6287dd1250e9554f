import numpy as np
from dataclasses import dataclass

from .errors import ConfigurationError, ShapeMismatch, TensorLifetimeError

# Conditional CuPy import
try:
    import cupy as cp # type: ignore
    has_cupy = True
except ImportError:
    cp = None
    has_cupy = False

DTYPE = np.float32


def get_xp(device):
    """Get the array module for a device"""
    if device == 'cpu':
        return np
    if not has_cupy:
        raise RuntimeError("CuPy not installed. Cannot use device='cuda'.")
    return cp


@dataclass(frozen=True)
class TensorInfo:
    """The 3D shape of a single sample: height, width and channels (linear tensors use 1, size, 1)"""
    height: int
    width: int
    channels: int

    def __post_init__(self):
        if self.height <= 0 or self.width <= 0 or self.channels <= 0:
            raise ConfigurationError(f"Invalid tensor info {self.height}x{self.width}x{self.channels}")

    @classmethod
    def linear(cls, size):
        return cls(1, size, 1)

    @classmethod
    def image(cls, height, width, channels=1):
        return cls(height, width, channels)

    @property
    def size(self):
        return self.height * self.width * self.channels

    @property
    def slice_size(self):
        """Number of values in a single channel"""
        return self.height * self.width


class Tensor:
    """
    A 2D (entities x length) float32 buffer.

    A tensor either owns its buffer (new/zeros/like/from_array/duplicate) or is a
    view over memory owned by someone else (view/reshape). Owned tensors are
    released with free(); views must never be freed.
    """

    __slots__ = ('_data', 'entities', 'length', 'device', 'owner', '_freed')

    def __init__(self, data, owner, device='cpu'):
        if data.ndim != 2:
            raise ShapeMismatch(f"A tensor buffer must be 2D, got shape {data.shape}")
        self._data = data
        self.entities, self.length = data.shape
        self.device = device
        self.owner = owner
        self._freed = False

    # --------------------------
    # Allocation
    # --------------------------
    @classmethod
    def new(cls, entities, length, device='cpu'):
        """Allocates an uninitialized tensor"""
        _check_size(entities, length)
        return cls(get_xp(device).empty((entities, length), dtype=DTYPE), True, device)

    @classmethod
    def zeros(cls, entities, length, device='cpu'):
        _check_size(entities, length)
        return cls(get_xp(device).zeros((entities, length), dtype=DTYPE), True, device)

    @classmethod
    def like(cls, other):
        """Allocates an uninitialized tensor with the same shape and device as another one"""
        return cls.new(other.entities, other.length, other.device)

    @classmethod
    def from_array(cls, array, device='cpu'):
        """Copies an array into a new owned tensor (1D arrays become a single row)"""
        xp = get_xp(device)
        data = xp.array(array, dtype=DTYPE)
        if data.ndim == 1:
            data = data.reshape(1, -1)
        elif data.ndim > 2:
            data = data.reshape(data.shape[0], -1)
        return cls(xp.ascontiguousarray(data), True, device)

    @classmethod
    def view(cls, buffer, entities=None, length=None):
        """Wraps an existing contiguous float32 buffer without copying it"""
        if buffer.dtype != DTYPE:
            raise ShapeMismatch(f"A tensor view requires a {np.dtype(DTYPE).name} buffer, got {buffer.dtype}")
        if entities is None:
            entities, length = (1, buffer.size) if buffer.ndim == 1 else (buffer.shape[0], buffer.size // buffer.shape[0])
        if entities * length != buffer.size:
            raise ShapeMismatch(f"Can't view {buffer.size} values as {entities}x{length}")
        device = 'cpu' if isinstance(buffer, np.ndarray) else 'cuda'
        return cls(buffer.reshape(entities, length), False, device)

    # --------------------------
    # Properties
    # --------------------------
    @property
    def data(self):
        if self._freed:
            raise TensorLifetimeError("The tensor has already been freed")
        return self._data

    @property
    def xp(self):
        return get_xp(self.device)

    @property
    def shape(self):
        return (self.entities, self.length)

    @property
    def size(self):
        return self.entities * self.length

    @property
    def is_freed(self):
        return self._freed

    def match_shape(self, other, length=None):
        """Checks the shape against another tensor, or against (entities, length)"""
        if length is None:
            return self.entities == other.entities and self.length == other.length
        return self.entities == other and self.length == length

    # --------------------------
    # Views and copies
    # --------------------------
    def reshape(self, entities, length):
        """Returns a non-owning view over the same buffer with a different shape"""
        if entities * length != self.size:
            raise ShapeMismatch(f"Can't reshape a {self.entities}x{self.length} tensor to {entities}x{length}")
        return Tensor(self.data.reshape(entities, length), False, self.device)

    def duplicate(self):
        """Deep copy into a new owned tensor"""
        return Tensor(self.data.copy(), True, self.device)

    def to(self, device):
        """Copies the tensor to the specified device"""
        if self.device == device:
            return self.duplicate()
        if device == 'cpu':
            return Tensor(cp.asnumpy(self.data), True, 'cpu')
        return Tensor(get_xp(device).asarray(self.data), True, device)

    def to_array(self):
        """Returns a host copy of the tensor contents"""
        data = self.data
        if self.device != 'cpu':
            return cp.asnumpy(data)
        return data.copy()

    def free(self):
        """Releases the owned buffer"""
        if not self.owner:
            raise TensorLifetimeError("A tensor view can't be freed")
        if self._freed:
            raise TensorLifetimeError("The tensor has already been freed")
        self._freed = True
        self._data = None

    def __repr__(self):
        state = 'freed' if self._freed else ('owner' if self.owner else 'view')
        return f"Tensor({self.entities}x{self.length}, device={self.device}, {state})"


def _check_size(entities, length):
    if entities <= 0 or length <= 0:
        raise ShapeMismatch(f"Invalid tensor size {entities}x{length}")


class TensorMap(dict):
    """
    A dictionary of owned tensors keyed by graph node.

    Every tensor still in the map is freed exactly once when the map is closed.
    Tensors popped out of the map become the caller's responsibility.
    """

    def __setitem__(self, key, tensor):
        if key in self:
            previous = dict.__getitem__(self, key)
            if previous is not tensor:
                previous.free()
        dict.__setitem__(self, key, tensor)

    def close(self):
        for tensor in self.values():
            if tensor.owner and not tensor.is_freed:
                tensor.free()
        self.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
