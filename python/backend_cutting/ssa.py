"""SSA rewrite: give every tensor name exactly one writer.

Source tensors (declared external inputs and weights read before any node
writes them) keep their bare names. Every node write creates a new version;
the last write of a non-source name keeps the bare name so that graph
outputs keep their public names, earlier writes get fresh `<name>_<k>`
names. A graph that already is in SSA form comes back unchanged.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set

from backend_cutting.errors import StructuralError
from backend_cutting.graph_ir import Graph, Node

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SsaResult:
    graph: Graph
    # original source name -> renamed name
    source_mapping: Dict[str, str]
    # renamed weight name -> original weight name (store-backed, referenced,
    # not a declared external input)
    weight_mapping: Dict[str, str]


class SsaRenamer:
    """Renames one graph at a time; owns its pool of generated names."""

    def __init__(self):
        self._taken: Set[str] = set()
        self._versions: Dict[str, int] = {}

    def _reserve(self, names: Iterable[str]) -> None:
        self._taken.update(names)

    def fresh_name(self, base: str) -> str:
        k = self._versions.get(base, 0)
        while True:
            k += 1
            candidate = f"{base}_{k}"
            if candidate not in self._taken:
                break
        self._versions[base] = k
        self._taken.add(candidate)
        return candidate

    def rewrite(self, graph: Graph, weight_store) -> SsaResult:
        self._reserve(graph.tensor_names())
        self._reserve(weight_store.names())

        write_counts = Counter(o for node in graph.nodes for o in node.outputs)
        writes_seen: Counter = Counter()

        current: Dict[str, str] = {}
        source_mapping: Dict[str, str] = {}
        for name in graph.external_inputs:
            current[name] = name
            source_mapping[name] = name

        nodes: List[Node] = []
        for idx, node in enumerate(graph.nodes):
            inputs = []
            for i in node.inputs:
                if i not in current:
                    if not weight_store.has(i):
                        raise StructuralError(
                            f"Node #{idx} {node.describe()} reads unversioned tensor '{i}': "
                            "not an external input, not a weight and not produced earlier"
                        )
                    current[i] = i
                    source_mapping[i] = i
                inputs.append(current[i])

            outputs = []
            for o in node.outputs:
                writes_seen[o] += 1
                is_last = writes_seen[o] == write_counts[o]
                if is_last and o not in source_mapping:
                    new = o
                else:
                    new = self.fresh_name(o)
                    logger.debug("SSA: node #%d writes %s as %s", idx, o, new)
                current[o] = new
                outputs.append(new)

            nodes.append(node.replace(inputs=tuple(inputs), outputs=tuple(outputs)))

        for o in graph.external_outputs:
            if o not in current:
                raise StructuralError(f"External output '{o}' is never produced")
            if current[o] != o:
                raise StructuralError(
                    f"External output '{o}' redefines an external input or weight of "
                    "the same name; its public name cannot be kept"
                )

        weight_mapping = {
            new: orig
            for orig, new in source_mapping.items()
            if orig not in graph.external_inputs and weight_store.has(orig)
        }

        return SsaResult(
            graph=graph.with_nodes(nodes),
            source_mapping=source_mapping,
            weight_mapping=weight_mapping,
        )


def ssa_rewrite(graph: Graph, weight_store) -> SsaResult:
    return SsaRenamer().rewrite(graph, weight_store)
