"""Utilities for running graph passes + backend lowering in one call.

Provides a pipeline that:
1. Runs optional Graph-level passes
2. Cuts the graph for the reference backend and converts every partition
3. Prunes weights the rewritten graph no longer reads
"""

from __future__ import annotations

from typing import Iterable, Mapping, Optional, Sequence

from backend_cutting.config import TransformerConfig
from backend_cutting.graph_ir import Graph
from backend_cutting.op_support import OpSetSupport
from backend_cutting.shape_inference import ShapeLike
from backend_cutting.subgraph_backend import FlatbufferConverter
from backend_cutting.transformer import BackendCuttingTransformer, TransformResult
from backend_cutting.weight_store import WeightStore


class GraphPassLike:
    """A small structural type for Graph-level passes.

    Any object with a `run(graph) -> ...` method is accepted. The return value
    can be:
    - a Graph
    - an object with a `.graph` attribute containing the updated Graph
    """

    def run(self, graph: Graph):  # pragma: no cover
        raise NotImplementedError


def run_graph_passes(graph: Graph, graph_passes: Sequence[GraphPassLike]) -> Graph:
    cur = graph
    for p in graph_passes:
        out = p.run(cur)
        if isinstance(out, Graph):
            cur = out
        elif hasattr(out, "graph") and isinstance(out.graph, Graph):
            cur = out.graph
        else:
            raise TypeError(f"Graph pass {p} returned unsupported type {type(out)}")
    return cur


def lower_to_backend(
    graph: Graph,
    weight_store: WeightStore,
    *,
    graph_passes: Optional[Sequence[GraphPassLike]] = None,
    supported_ops: Optional[Iterable[str]] = None,
    input_shape_hints: Optional[Mapping[str, ShapeLike]] = None,
    config: Optional[TransformerConfig] = None,
) -> TransformResult:
    """Lower `graph` onto the reference FlatBuffer backend.

    Pipeline:
      1) optional graph_passes (Graph -> Graph)
      2) OpSetSupport + FlatbufferConverter through BackendCuttingTransformer
    """
    config = config or TransformerConfig()
    graph = run_graph_passes(graph, graph_passes or [])
    return BackendCuttingTransformer(config).transform(
        graph,
        weight_store,
        supports=OpSetSupport(supported_ops),
        convert=FlatbufferConverter(config),
        input_shape_hints=input_shape_hints,
    )
