"""OpSetSupport: decides which nodes the accelerator backend can take."""

import logging
from typing import Iterable, Mapping, Optional

import torch

from backend_cutting.graph_ir import Node, TensorShape

logger = logging.getLogger(__name__)


# Op types the reference backend accepts.
DEFAULT_SUPPORTED_OPS = {
    # Elementwise
    "Add",
    "Sub",
    "Mul",
    "Div",
    "Neg",
    "Exp",
    "Sqrt",
    "Relu",
    "Sigmoid",
    "Tanh",
    # Linear algebra / NN
    "MatMul",
    "FC",
    "Linear",
    "Conv",
    "Softmax",
    # Layout
    "Reshape",
    "Flatten",
    "Transpose",
    "Concat",
    "Identity",
}

DEFAULT_SUPPORTED_DTYPES = {
    torch.float32,
    torch.float16,
    torch.bfloat16,
}


class OpSetSupport:
    """Support query backed by an op-type set plus per-node checks.

    When a shape hint table is given, nodes touching a tensor whose known
    dtype is not in `supported_dtypes`, or whose rank exceeds `max_rank`,
    are rejected. Tensors without a hint are not held against the node.
    """

    def __init__(
        self,
        supported_ops: Optional[Iterable[str]] = None,
        shape_hints: Optional[Mapping[str, TensorShape]] = None,
        supported_dtypes: Optional[Iterable[torch.dtype]] = None,
        max_rank: Optional[int] = None,
    ):
        self.supported_ops = set(DEFAULT_SUPPORTED_OPS if supported_ops is None else supported_ops)
        self.shape_hints = shape_hints
        self.supported_dtypes = set(
            DEFAULT_SUPPORTED_DTYPES if supported_dtypes is None else supported_dtypes
        )
        self.max_rank = max_rank

    def bind(self, shape_hints: Mapping[str, TensorShape]) -> "OpSetSupport":
        """Return a copy consulting `shape_hints`."""
        return OpSetSupport(
            self.supported_ops,
            shape_hints=shape_hints,
            supported_dtypes=self.supported_dtypes,
            max_rank=self.max_rank,
        )

    def __call__(self, node: Node) -> bool:
        if node.op_type not in self.supported_ops:
            logger.info("Backend does not support op %s", node.op_type)
            return False
        if self.shape_hints is None:
            return True

        for name in (*node.inputs, *node.outputs):
            shape = self.shape_hints.get(name)
            if shape is None:
                continue
            if shape.dtype not in self.supported_dtypes:
                logger.info(
                    "Backend does not support %s on %s tensor %s",
                    node.op_type,
                    shape.dtype,
                    name,
                )
                return False
            if self.max_rank is not None and shape.rank > self.max_rank:
                logger.info(
                    "Backend does not support %s on rank-%d tensor %s",
                    node.op_type,
                    shape.rank,
                    name,
                )
                return False
        return True
