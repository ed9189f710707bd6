"""Graph IR: operators as nodes, tensor names as edges.

Nodes and graphs are immutable. Rewrites build new values instead of
mutating them in place, so a caller holding the original graph never sees a
half-rewritten state.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import torch

from backend_cutting.errors import StructuralError


@dataclass(frozen=True)
class TensorShape:
    """Static shape/type descriptor of one tensor."""

    dims: Tuple[int, ...]
    dtype: torch.dtype = torch.float32

    @property
    def rank(self) -> int:
        return len(self.dims)

    def __str__(self) -> str:
        dtype = str(self.dtype).replace("torch.", "")
        return f"{dtype}[{', '.join(str(d) for d in self.dims)}]"


def _freeze_attrs(attrs: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(attrs or {}))


@dataclass(frozen=True)
class Node:
    """One operator instance.

    `attrs` holds the operator arguments. The optional device annotation is
    stored under the "device" key.
    """

    op_type: str
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()
    attrs: Mapping[str, Any] = field(default_factory=dict)
    name: str = ""

    def __post_init__(self):
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "attrs", _freeze_attrs(self.attrs))

    @property
    def device(self) -> Optional[str]:
        return self.attrs.get("device")

    def replace(self, **changes) -> "Node":
        return replace(self, **changes)

    def describe(self) -> str:
        label = self.name or self.op_type
        return f"{label}({', '.join(self.inputs)}) -> ({', '.join(self.outputs)})"

    # MappingProxyType is not hashable; identity is by structure.
    def __hash__(self) -> int:
        return hash((self.op_type, self.inputs, self.outputs, self.name))


@dataclass(frozen=True)
class Graph:
    """Ordered node list plus the declared external inputs/outputs."""

    nodes: Tuple[Node, ...] = ()
    external_inputs: Tuple[str, ...] = ()
    external_outputs: Tuple[str, ...] = ()
    device: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "external_inputs", tuple(self.external_inputs))
        object.__setattr__(self, "external_outputs", tuple(self.external_outputs))

    def __len__(self) -> int:
        return len(self.nodes)

    def with_nodes(self, nodes: Iterable[Node]) -> "Graph":
        return replace(self, nodes=tuple(nodes))

    def producers(self) -> Dict[str, int]:
        """Tensor name -> index of the (last) node writing it."""
        out: Dict[str, int] = {}
        for idx, node in enumerate(self.nodes):
            for o in node.outputs:
                out[o] = idx
        return out

    def consumers(self) -> Dict[str, List[int]]:
        out: Dict[str, List[int]] = {}
        for idx, node in enumerate(self.nodes):
            for i in node.inputs:
                users = out.setdefault(i, [])
                if not users or users[-1] != idx:
                    users.append(idx)
        return out

    def referenced_inputs(self) -> Set[str]:
        return {i for node in self.nodes for i in node.inputs}

    def tensor_names(self) -> Set[str]:
        names = set(self.external_inputs) | set(self.external_outputs)
        for node in self.nodes:
            names.update(node.inputs)
            names.update(node.outputs)
        return names


def validate_graph(
    graph: Graph,
    known_sources: Iterable[str] = (),
    *,
    require_ssa: bool = False,
) -> None:
    """Check topological order, dangling references and (optionally) single writers.

    `known_sources` are names backed by the runtime (weights) in addition to
    the declared external inputs.
    """
    available = set(graph.external_inputs) | set(known_sources)
    written: Set[str] = set()
    for idx, node in enumerate(graph.nodes):
        for i in node.inputs:
            if i not in available:
                raise StructuralError(
                    f"Node #{idx} {node.describe()} reads '{i}', which is neither "
                    "an external input, a weight, nor produced by an earlier node"
                )
        for o in node.outputs:
            if require_ssa and (o in written or o in graph.external_inputs):
                raise StructuralError(
                    f"Tensor '{o}' has more than one writer (node #{idx} {node.describe()})"
                )
            written.add(o)
            available.add(o)

    for o in graph.external_outputs:
        if o not in available:
            raise StructuralError(f"External output '{o}' is never produced")
