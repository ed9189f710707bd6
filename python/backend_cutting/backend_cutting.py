"""Backend cutting: split a graph into supported partitions and kept nodes.

Nodes are visited in graph order (assumed topological). Supported nodes are
merged greedily into one open partition. An unsupported node met while a
partition is open is hoisted ahead of the partition when it reads nothing
the partition produces, and deferred until after it otherwise. The partition
is only closed when a supported node reads something a deferred node
produces: the opaque node replacing the partition would then have to run
both before and after that deferred node.

The concatenation of the kept nodes and the partition members, in segment
order, is a topological order of the input graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Set, Tuple, Union

from backend_cutting.graph_ir import Graph, Node

logger = logging.getLogger(__name__)

SupportQuery = Callable[[Node], bool]


@dataclass(frozen=True)
class Partition:
    """Maximal group of supported nodes that becomes one opaque node."""

    nodes: Tuple[Node, ...]
    boundary_inputs: Tuple[str, ...]
    boundary_outputs: Tuple[str, ...]
    index: int = 0

    @property
    def op_types(self) -> List[str]:
        return [n.op_type for n in self.nodes]

    @property
    def produced(self) -> Set[str]:
        return {o for n in self.nodes for o in n.outputs}

    def __len__(self) -> int:
        return len(self.nodes)


Segment = Union[Node, Partition]


def query_support(supports: SupportQuery, node: Node) -> bool:
    """Ask `supports` about `node`; a failing query means "keep as-is"."""
    try:
        return bool(supports(node))
    except Exception:  # noqa: BLE001 - support decisions never abort the rewrite
        logger.warning(
            "Support query raised for %s; keeping the node unconverted",
            node.describe(),
            exc_info=True,
        )
        return False


def compute_boundaries(
    graph: Graph, member_indices: Sequence[int]
) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Return (boundary_inputs, boundary_outputs) of the given node group.

    Inputs: distinct tensors read by members and not produced by a member,
    in first-use order. Outputs: tensors produced by a member and read by a
    non-member or declared as external outputs, in production order.
    """
    members = set(member_indices)
    produced: Set[str] = set()
    for idx in member_indices:
        produced.update(graph.nodes[idx].outputs)

    inputs: List[str] = []
    seen: Set[str] = set()
    for idx in member_indices:
        for i in graph.nodes[idx].inputs:
            if i not in produced and i not in seen:
                seen.add(i)
                inputs.append(i)

    readers: Dict[str, Set[int]] = {}
    for idx, node in enumerate(graph.nodes):
        for i in node.inputs:
            readers.setdefault(i, set()).add(idx)

    graph_outputs = set(graph.external_outputs)
    outputs: List[str] = []
    for idx in member_indices:
        for o in graph.nodes[idx].outputs:
            if o in outputs:
                continue
            if o in graph_outputs or readers.get(o, set()) - members:
                outputs.append(o)

    return tuple(inputs), tuple(outputs)


def cut_graph(graph: Graph, supports: SupportQuery) -> List[Segment]:
    """Split `graph` into an ordered list of kept nodes and partitions."""
    groups: List[Union[int, List[int]]] = []
    open_members: List[int] = []
    open_produced: Set[str] = set()
    # Unsupported nodes emitted before (hoisted) or after (deferred) the
    # open partition.
    hoisted: List[int] = []
    deferred: List[int] = []
    deferred_produced: Set[str] = set()

    def close() -> None:
        groups.extend(hoisted)
        if open_members:
            groups.append(list(open_members))
        groups.extend(deferred)
        for pending in (open_members, hoisted, deferred):
            pending.clear()
        open_produced.clear()
        deferred_produced.clear()

    for idx, node in enumerate(graph.nodes):
        if query_support(supports, node):
            blocking = [i for i in node.inputs if i in deferred_produced]
            if blocking:
                logger.info(
                    "Cutting partition before %s: it reads %s, computed outside the partition",
                    node.op_type,
                    ", ".join(blocking),
                )
                close()
            open_members.append(idx)
            open_produced.update(node.outputs)
            continue

        if not open_members:
            groups.append(idx)
        elif any(i in open_produced or i in deferred_produced for i in node.inputs):
            deferred.append(idx)
            deferred_produced.update(node.outputs)
        else:
            hoisted.append(idx)
    close()

    segments: List[Segment] = []
    num_partitions = 0
    for g in groups:
        if isinstance(g, int):
            segments.append(graph.nodes[g])
            continue
        boundary_inputs, boundary_outputs = compute_boundaries(graph, g)
        segments.append(
            Partition(
                nodes=tuple(graph.nodes[i] for i in g),
                boundary_inputs=boundary_inputs,
                boundary_outputs=boundary_outputs,
                index=num_partitions,
            )
        )
        num_partitions += 1

    logger.info("%s", partition_summary(segments))
    return segments


def expand_segments(segments: Sequence[Segment]) -> List[Node]:
    """Flatten segments back into a node list."""
    nodes: List[Node] = []
    for seg in segments:
        if isinstance(seg, Partition):
            nodes.extend(seg.nodes)
        else:
            nodes.append(seg)
    return nodes


def partition_summary(segments: Sequence[Segment]) -> str:
    partitions = [s for s in segments if isinstance(s, Partition)]
    kept = len(segments) - len(partitions)
    covered = sum(len(p) for p in partitions)
    return (
        f"Backend cutting: {len(partitions)} partition(s) covering {covered} node(s), "
        f"{kept} node(s) kept"
    )
