"""Import a torch.export ExportedProgram as a Graph plus weight store.

Placeholders backed by parameters, buffers or lifted constants become
weights in the store (keyed by placeholder name), user inputs become
external inputs and every call_function node becomes one Node whose op type
is the stringified target. Fake-tensor metadata recorded by export becomes
shape hints.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Tuple

import torch
from torch.export import ExportedProgram

from backend_cutting.graph_ir import Graph, Node, TensorShape
from backend_cutting.weight_store import WeightStore, tensor_shape

logger = logging.getLogger(__name__)


def _collect_inputs(arg: Any, out: List[str]) -> Any:
    """Record fx.Node references in `arg` and return its non-tensor skeleton."""
    if isinstance(arg, torch.fx.Node):
        out.append(arg.name)
        return f"%{arg.name}"
    if isinstance(arg, list):
        return [_collect_inputs(a, out) for a in arg]
    if isinstance(arg, tuple):
        return tuple(_collect_inputs(a, out) for a in arg)
    if isinstance(arg, dict):
        return {k: _collect_inputs(v, out) for k, v in arg.items()}
    return arg


def _meta_shape(node: torch.fx.Node):
    val = node.meta.get("val")
    if isinstance(val, torch.Tensor):
        try:
            return tensor_shape(val)
        except TypeError:
            # Symbolic dims do not convert to int.
            return None
    return None


def graph_from_exported_program(
    ep: ExportedProgram,
) -> Tuple[Graph, WeightStore, Dict[str, TensorShape]]:
    sig = ep.graph_signature
    constant_fqns: Dict[str, str] = {}
    constant_fqns.update(sig.inputs_to_parameters)
    constant_fqns.update(sig.inputs_to_buffers)
    constant_fqns.update(getattr(sig, "inputs_to_lifted_tensor_constants", {}) or {})

    weights: Dict[str, torch.Tensor] = {}
    hints: Dict[str, TensorShape] = {}
    external_inputs: List[str] = []
    external_outputs: List[str] = []
    nodes: List[Node] = []

    for node in ep.graph_module.graph.nodes:
        if node.op == "placeholder":
            fqn = constant_fqns.get(node.name)
            if fqn is None:
                external_inputs.append(node.name)
            else:
                tensor = ep.state_dict.get(fqn)
                if tensor is None:
                    tensor = ep.constants[fqn]
                weights[node.name] = tensor.detach()

        elif node.op == "call_function":
            inputs: List[str] = []
            args = _collect_inputs(tuple(node.args), inputs)
            kwargs = _collect_inputs(dict(node.kwargs), inputs)
            nodes.append(
                Node(
                    op_type=str(node.target),
                    inputs=tuple(inputs),
                    outputs=(node.name,),
                    attrs={"args": args, "kwargs": kwargs},
                    name=node.name,
                )
            )

        elif node.op == "output":
            collected: List[str] = []
            _collect_inputs(node.args[0], collected)
            external_outputs.extend(collected)

        else:
            logger.warning("Skipping fx node %s with op %s", node.name, node.op)
            continue

        shape = _meta_shape(node)
        if shape is not None and node.op != "output":
            hints[node.name] = shape

    graph = Graph(
        nodes=tuple(nodes),
        external_inputs=tuple(external_inputs),
        external_outputs=tuple(external_outputs),
    )
    logger.info(
        "Imported %d node(s), %d input(s), %d weight(s)",
        len(nodes),
        len(external_inputs),
        len(weights),
    )
    return graph, WeightStore(weights), hints
