"""BackendCuttingTransformer: replaces supported regions with opaque nodes.

Pipeline:
  1) SSA rewrite (weight mapping + source mapping)
  2) shape hint unification (store shapes, caller hints, inference)
  3) backend cutting with the support query
  4) one `convert` call per partition, spliced in place of its members
  5) pruning of weights the rewritten graph no longer reads

Nothing the caller owns changes until step 5, which only runs after the
rewritten graph has been validated and the pruning plan checked. A failure
anywhere leaves both the caller's graph and weight store untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import torch

from backend_cutting.backend_cutting import Partition, Segment, SupportQuery, cut_graph
from backend_cutting.config import TransformerConfig
from backend_cutting.errors import BackendCuttingError, ConversionError, PruningError, StructuralError
from backend_cutting.graph_ir import Graph, Node, TensorShape, validate_graph
from backend_cutting.shape_inference import ShapeLike, unify_shape_hints
from backend_cutting.ssa import SsaRenamer
from backend_cutting.weight_store import MappedWeightStore, WeightStore

logger = logging.getLogger(__name__)

Converter = Callable[..., Node]


@dataclass(frozen=True)
class TransformResult:
    graph: Graph
    # Original names of the weights deleted from the store.
    pruned_weights: Tuple[str, ...] = ()
    num_partitions: int = 0
    weight_mapping: Dict[str, str] = field(default_factory=dict)
    shape_hints: Dict[str, TensorShape] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Subgraph substitution
# ---------------------------------------------------------------------------

def _describe_partition(partition: Partition) -> str:
    return f"partition #{partition.index} [{', '.join(partition.op_types)}]"


def check_converted_node(partition: Partition, node: Node, weight_store) -> None:
    """Verify the converter's node against the partition boundaries.

    Outputs must be exactly the boundary outputs. Inputs must be an
    order-stable, duplicate-free subsequence of the boundary inputs that
    keeps every non-weight input; weights may be baked into the node.
    """
    where = _describe_partition(partition)
    if not isinstance(node, Node):
        raise ConversionError(f"Converter returned {type(node).__name__} for {where}, expected Node")

    if len(set(node.outputs)) != len(node.outputs) or set(node.outputs) != set(
        partition.boundary_outputs
    ):
        raise ConversionError(
            f"Converted node for {where} declares outputs {list(node.outputs)}, "
            f"expected {list(partition.boundary_outputs)}"
        )

    position = {name: i for i, name in enumerate(partition.boundary_inputs)}
    last = -1
    for name in node.inputs:
        if name not in position:
            raise ConversionError(
                f"Converted node for {where} reads '{name}', which is not a boundary input"
            )
        if position[name] <= last:
            raise ConversionError(
                f"Converted node for {where} reorders or repeats input '{name}'"
            )
        last = position[name]

    kept = set(node.inputs)
    dropped = [
        name for name in partition.boundary_inputs
        if name not in kept and not weight_store.has(name)
    ]
    if dropped:
        raise ConversionError(
            f"Converted node for {where} dropped non-weight input(s) {dropped}"
        )


def resolve_boundary_weights(partition: Partition, weight_store) -> Dict[str, torch.Tensor]:
    """Fetch the concrete value of every boundary input that is a weight.

    A weight known to the rewrite but gone from the store is a structural
    error; the converter is never called with a dangling weight.
    """
    weights: Dict[str, torch.Tensor] = {}
    for name in partition.boundary_inputs:
        if not weight_store.has(name):
            continue
        try:
            weights[name] = weight_store.get(name)
        except KeyError as e:
            raise StructuralError(
                f"Weight '{name}' of {_describe_partition(partition)} is missing from the store"
            ) from e
    return weights


def convert_partition(
    partition: Partition,
    convert: Converter,
    shape_hints: Dict[str, TensorShape],
    weight_store,
    config: TransformerConfig,
) -> Node:
    where = _describe_partition(partition)
    if config.require_boundary_shapes:
        missing = [
            name
            for name in (*partition.boundary_inputs, *partition.boundary_outputs)
            if name not in shape_hints
        ]
        if missing:
            raise StructuralError(f"No shape hint for boundary tensor(s) {missing} of {where}")

    weights = resolve_boundary_weights(partition, weight_store)
    logger.info(
        "Converting %s: %d input(s) (%d weight(s), %d bytes), %d output(s)",
        where,
        len(partition.boundary_inputs),
        len(weights),
        sum(t.numel() * t.element_size() for t in weights.values()),
        len(partition.boundary_outputs),
    )

    try:
        node = convert(
            partition.nodes,
            partition.boundary_inputs,
            partition.boundary_outputs,
            shape_hints,
            weight_store,
        )
    except BackendCuttingError:
        raise
    except Exception as e:
        raise ConversionError(f"Converter failed on {where}: {e}") from e

    check_converted_node(partition, node, weight_store)
    return node


def substitute_partitions(
    graph: Graph,
    segments: Sequence[Segment],
    convert: Converter,
    shape_hints: Dict[str, TensorShape],
    weight_store,
    config: Optional[TransformerConfig] = None,
) -> Graph:
    """Build the output graph: kept nodes as-is, one converted node per partition."""
    config = config or TransformerConfig()
    nodes: List[Node] = []
    for seg in segments:
        if isinstance(seg, Partition):
            nodes.append(convert_partition(seg, convert, shape_hints, weight_store, config))
        else:
            nodes.append(seg)
    return graph.with_nodes(nodes)


# ---------------------------------------------------------------------------
# Weight lifecycle
# ---------------------------------------------------------------------------

def plan_weight_pruning(graph: Graph, weight_mapping: Mapping[str, str]) -> List[str]:
    """Original names of the weights `graph` no longer reads.

    A store entry can be reached under several names: its renamed alias, or
    its bare name when a caller-built mapping leaves some reads unrenamed.
    An entry is only deleted when no name resolving to it is still read.
    """
    used = graph.referenced_inputs() | set(graph.external_outputs)
    to_delete: List[str] = []
    for new, orig in weight_mapping.items():
        if new not in used and orig not in to_delete:
            to_delete.append(orig)

    reachable = {weight_mapping.get(name, name) for name in used}
    still_used = [name for name in to_delete if name in reachable]
    if still_used:
        raise PruningError(
            f"Weight(s) {still_used} are scheduled for removal but still referenced "
            "by the rewritten graph; partition boundaries are inconsistent"
        )
    return to_delete


def prune_unused_weights(weight_store: WeightStore, names: Sequence[str]) -> None:
    for name in names:
        logger.debug("Removing unused weight blob: %s", name)
        weight_store.delete(name)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class BackendCuttingTransformer:
    def __init__(self, config: Optional[TransformerConfig] = None):
        self.config = config or TransformerConfig()

    def transform(
        self,
        graph: Graph,
        weight_store: WeightStore,
        supports: SupportQuery,
        convert: Converter,
        input_shape_hints: Optional[Mapping[str, ShapeLike]] = None,
    ) -> TransformResult:
        """Rewrite `graph`, returning the new graph; prunes `weight_store` on success.

        A `supports` object exposing `bind(shape_hints)` (e.g. OpSetSupport)
        is rebound to the unified shape hint table before cutting.
        """
        if weight_store is None:
            raise StructuralError("Weight store cannot be None")

        ssa = SsaRenamer().rewrite(graph, weight_store)
        mapped = MappedWeightStore(weight_store, ssa.weight_mapping)
        shape_hints = unify_shape_hints(
            ssa.graph, mapped, input_shape_hints, ssa.source_mapping
        )
        validate_graph(ssa.graph, mapped.names(), require_ssa=True)

        if not graph.nodes:
            return TransformResult(graph=graph, shape_hints=shape_hints)

        bind = getattr(supports, "bind", None)
        if callable(bind):
            supports = bind(shape_hints)

        segments = cut_graph(ssa.graph, supports)
        num_partitions = sum(isinstance(s, Partition) for s in segments)
        new_graph = substitute_partitions(
            ssa.graph, segments, convert, shape_hints, mapped, self.config
        )
        validate_graph(new_graph, mapped.names(), require_ssa=True)

        pruned = plan_weight_pruning(new_graph, ssa.weight_mapping)
        prune_unused_weights(weight_store, pruned)

        logger.info(
            "Rewrote %d node(s) into %d (%d partition(s)); pruned %d weight(s)",
            len(graph.nodes),
            len(new_graph.nodes),
            num_partitions,
            len(pruned),
        )
        return TransformResult(
            graph=new_graph,
            pruned_weights=tuple(pruned),
            num_partitions=num_partitions,
            weight_mapping=dict(ssa.weight_mapping),
            shape_hints=shape_hints,
        )
