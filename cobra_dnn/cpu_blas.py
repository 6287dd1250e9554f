from .errors import ShapeMismatch
from .parallel import parallel_for


def sum_tensors(inputs, y):
    """y = inputs[0] + inputs[1] + ..., elementwise"""
    if len(inputs) == 0:
        raise ShapeMismatch("The inputs can't be empty")
    for tensor in inputs:
        if not tensor.match_shape(y):
            raise ShapeMismatch(f"Can't sum a {tensor.shape} tensor into a {y.shape} one")
    sources = [tensor.data for tensor in inputs]
    py = y.data

    def kernel(lo, hi):
        total = sources[0][lo:hi].copy()
        for source in sources[1:]:
            total += source[lo:hi]
        py[lo:hi] = total
    parallel_for(0, y.entities, kernel)


def multiply_elementwise(x1, x2, y):
    """y = x1 * x2, elementwise. y can be one of the inputs"""
    if not x1.match_shape(x2) or not x1.match_shape(y):
        raise ShapeMismatch("The input tensors must have the same shape")
    p1, p2, py = x1.data, x2.data, y.data

    def kernel(lo, hi):
        py[lo:hi] = p1[lo:hi] * p2[lo:hi]
    parallel_for(0, y.entities, kernel)
