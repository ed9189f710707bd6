"""FlatbufferConverter: turns one partition into a single opaque node."""

import logging
import os
import re
from typing import Dict, List, Mapping, Optional, Sequence

from backend_cutting.config import TransformerConfig
from backend_cutting.dump_ir import format_subgraph
from backend_cutting.errors import StructuralError
from backend_cutting.graph_ir import Node, TensorShape
from backend_cutting.serialize import (
    IrNode,
    IrValue,
    SubgraphIR,
    dtype_to_type,
    serialize_subgraph,
    tensor_to_bytes,
)

logger = logging.getLogger(__name__)

COMPILED_OP_TYPE = "CompiledSubgraph"
PRODUCER_NAME = "backend_cutting"


class SubgraphConverter:
    """Structural type for the conversion callback.

    Any callable with this signature is accepted by the transformer. It must
    return one node whose outputs are `boundary_outputs` and whose inputs are
    the `boundary_inputs` it still needs at run time.
    """

    def __call__(
        self,
        nodes: Sequence[Node],
        boundary_inputs: Sequence[str],
        boundary_outputs: Sequence[str],
        shape_hints: Mapping[str, TensorShape],
        weight_store,
    ) -> Node:  # pragma: no cover
        raise NotImplementedError


class FlatbufferConverter(SubgraphConverter):
    """Serializes a partition into a FlatBuffer blob carried by one node."""

    def __init__(self, config: Optional[TransformerConfig] = None):
        self.config = config or TransformerConfig()
        # Successful conversions, for reporting only.
        self.num_converted = 0

    def build_ir(
        self,
        nodes: Sequence[Node],
        boundary_inputs: Sequence[str],
        boundary_outputs: Sequence[str],
        shape_hints: Mapping[str, TensorShape],
        weight_store,
    ) -> SubgraphIR:
        ir = SubgraphIR(
            metadata={
                "producer": PRODUCER_NAME,
                "max_batch_size": self.config.max_batch_size,
                "max_workspace_size": self.config.max_workspace_size,
                "source_ops": [n.op_type for n in nodes],
            }
        )

        for n in nodes:
            attrs = {k: v for k, v in n.attrs.items() if k != "device"}
            ir.nodes.append(IrNode(n.op_type, n.inputs, n.outputs, attrs))

        # Boundary inputs: weights become initializers, the rest stay runtime inputs.
        input_index = 0
        for name in boundary_inputs:
            if self.config.embed_weights and weight_store.has(name):
                tensor = weight_store.get(name)
                logger.debug("Add input weight: %s", name)
                ir.values.append(
                    IrValue(
                        name=name,
                        tensor_type=dtype_to_type(tensor.dtype, name),
                        dims=list(tensor.shape),
                        is_initializer=True,
                        data=tensor_to_bytes(tensor),
                    )
                )
                continue

            shape = shape_hints.get(name)
            if shape is None:
                logger.warning("Cannot get shape of %s", name)
                ir.values.append(IrValue(name=name, is_input=True, input_index=input_index))
            else:
                logger.debug("Adding boundary input: %s", name)
                ir.values.append(
                    IrValue(
                        name=name,
                        tensor_type=dtype_to_type(shape.dtype, name),
                        dims=list(shape.dims),
                        is_input=True,
                        input_index=input_index,
                    )
                )
            input_index += 1

        for name in boundary_outputs:
            shape = shape_hints.get(name)
            if shape is None:
                raise StructuralError(f"Cannot find shape info for output {name}")
            ir.values.append(
                IrValue(
                    name=name,
                    tensor_type=dtype_to_type(shape.dtype, name),
                    dims=list(shape.dims),
                    is_output=True,
                )
            )

        return ir

    def __call__(
        self,
        nodes: Sequence[Node],
        boundary_inputs: Sequence[str],
        boundary_outputs: Sequence[str],
        shape_hints: Mapping[str, TensorShape],
        weight_store,
    ) -> Node:
        ir = self.build_ir(nodes, boundary_inputs, boundary_outputs, shape_hints, weight_store)
        blob = serialize_subgraph(ir)

        name = self.node_name(nodes)
        if self.config.debug_dump_path:
            self._dump(ir, name)

        attrs: Dict[str, object] = {
            "serialized_engine": blob,
            "max_batch_size": self.config.max_batch_size,
            "max_workspace_size": self.config.max_workspace_size,
            "log_verbosity": self.config.log_verbosity,
        }
        for i, v in enumerate(ir.outputs):
            attrs[f"output_size_hint_{i}"] = tuple(v.dims)
            logger.info("Adding output hint: %s", v.name)

        devices = {n.device for n in nodes}
        if len(devices) == 1 and None not in devices:
            attrs["device"] = devices.pop()

        runtime_inputs: List[str] = [v.name for v in ir.inputs]
        op = Node(
            op_type=COMPILED_OP_TYPE,
            inputs=tuple(runtime_inputs),
            outputs=tuple(v.name for v in ir.outputs),
            attrs=attrs,
            name=name,
        )
        self.num_converted += 1
        logger.info(
            "Converted %d node(s) into %s (%d bytes, %d initializer(s))",
            len(nodes),
            op.name,
            len(blob),
            len(ir.initializers),
        )
        return op

    @staticmethod
    def node_name(nodes: Sequence[Node]) -> str:
        """Name the opaque node after the first tensor its members write.

        Tensor names are single-writer, so the name is unique within one
        rewrite and does not depend on earlier conversions.
        """
        anchor = next((o for n in nodes for o in n.outputs), "empty")
        return f"compiled_subgraph_{anchor}"

    def _dump(self, ir: SubgraphIR, name: str) -> None:
        os.makedirs(self.config.debug_dump_path, exist_ok=True)
        path = os.path.join(self.config.debug_dump_path, re.sub(r"[^\w.-]", "_", name) + ".txt")
        with open(path, "w") as f:
            f.write(format_subgraph(ir, show_data=True))
        logger.debug("Wrote subgraph dump %s", path)
