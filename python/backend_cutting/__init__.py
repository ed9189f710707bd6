"""Backend cutting: offload supported graph regions to an accelerator backend.

Maximal regions of a dataflow graph accepted by a support query are replaced
by single opaque nodes produced by a converter callback; everything else is
kept as-is. Weights that end up baked into converted nodes are pruned from
the caller's weight store.
"""

from __future__ import annotations

from backend_cutting.backend_cutting import Partition, cut_graph
from backend_cutting.config import TransformerConfig
from backend_cutting.errors import (
    BackendCuttingError,
    ConversionError,
    PruningError,
    StructuralError,
)
from backend_cutting.graph_ir import Graph, Node, TensorShape
from backend_cutting.op_support import OpSetSupport
from backend_cutting.pipeline import lower_to_backend
from backend_cutting.ssa import SsaRenamer
from backend_cutting.subgraph_backend import FlatbufferConverter
from backend_cutting.transformer import BackendCuttingTransformer, TransformResult
from backend_cutting.weight_store import WeightStore

__all__ = [
    "BackendCuttingError",
    "BackendCuttingTransformer",
    "ConversionError",
    "FlatbufferConverter",
    "Graph",
    "Node",
    "OpSetSupport",
    "Partition",
    "PruningError",
    "SsaRenamer",
    "StructuralError",
    "TensorShape",
    "TransformResult",
    "TransformerConfig",
    "WeightStore",
    "cut_graph",
    "lower_to_backend",
]
