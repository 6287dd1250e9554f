import logging
import os

import numpy as np

from . import cpu_dnn, gpu_dnn
from .parallel import get_worker_count
from .tensor import Tensor

# Largest difference allowed between the two backends
PARITY_TOLERANCE = 1e-5


def configure_logging():
    """Set up logging from the LOG_LEVEL environment variable (INFO by default)"""
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def backend_parity():
    """Runs a fully connected layer on both backends and returns the largest output difference"""
    rng = np.random.default_rng(0)
    x = Tensor.from_array(rng.standard_normal((8, 16)))
    w = Tensor.from_array(rng.standard_normal((16, 4)))
    b = Tensor.from_array(rng.standard_normal((1, 4)))
    y_cpu, y_vec = Tensor.new(8, 4), Tensor.new(8, 4)
    try:
        cpu_dnn.fully_connected_forward(x, w, b, y_cpu)
        gpu_dnn.fully_connected_forward(x, w, b, y_vec)
        cpu_dnn.softmax_forward(y_cpu, y_cpu)
        gpu_dnn.softmax_forward(y_vec, y_vec)
        return float(np.max(np.abs(y_cpu.data - y_vec.data)))
    finally:
        for tensor in (x, w, b, y_cpu, y_vec):
            tensor.free()


def check_installation():
    """Verify the CPU kernels and GPU support availability"""
    configure_logging()
    print(f"NumPy version: {np.__version__}")
    print(f"Worker threads: {get_worker_count()}")
    difference = backend_parity()
    status = "OK" if difference <= PARITY_TOLERANCE else "MISMATCH"
    print(f"Backend parity: {status} (max difference {difference:.2e})")
    try:
        import cupy as cp # type: ignore
        print(f"CuPy version: {cp.__version__}")
        print(f"CUDA Available: {cp.is_available()}")
        print(f"CUDA Runtime Version: {cp.cuda.runtime.runtimeGetVersion()}")
    except ImportError:
        print("CuPy not installed. GPU features unavailable.")
    except Exception as e:
        print(f"GPU check failed: {str(e)}")
