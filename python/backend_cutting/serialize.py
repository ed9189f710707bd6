"""FlatBuffer serialization of a converted subgraph.

Uses the `flatbuffers` Python library directly (no generated code). Layout,
with field slots in brackets:

  table Value    { name:string [0]; type:int [1]; dims:[long] [2];
                   is_input:bool [3]; is_output:bool [4];
                   is_initializer:bool [5]; data:[ubyte] [6];
                   input_index:int = -1 [7]; }
  table IrNode   { op_type:string [0]; inputs:[string] [1];
                   outputs:[string] [2]; attrs_json:string [3]; }
  table Subgraph { values:[Value] [0]; nodes:[IrNode] [1];
                   metadata_json:string [2]; }
  root_type Subgraph;

Element types are kept as-is. A dtype without a type code is rejected
instead of being converted to float.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

import flatbuffers
import numpy as np
import torch
from flatbuffers import encode, number_types, packer
from flatbuffers.table import Table

from backend_cutting.errors import StructuralError

# ---------------------------------------------------------------------------
# TensorType codes
# ---------------------------------------------------------------------------

TYPE_F32 = 0
TYPE_F16 = 1
TYPE_I64 = 2
TYPE_I32 = 3
TYPE_BOOL = 4
TYPE_BF16 = 5
TYPE_I16 = 6
TYPE_I8 = 7
TYPE_U8 = 8
TYPE_F64 = 9

_DTYPE_TO_TYPE = {
    torch.float32: TYPE_F32,
    torch.float16: TYPE_F16,
    torch.int64: TYPE_I64,
    torch.int32: TYPE_I32,
    torch.bool: TYPE_BOOL,
    torch.bfloat16: TYPE_BF16,
    torch.int16: TYPE_I16,
    torch.int8: TYPE_I8,
    torch.uint8: TYPE_U8,
    torch.float64: TYPE_F64,
}
_TYPE_TO_DTYPE = {v: k for k, v in _DTYPE_TO_TYPE.items()}

TYPE_NAMES = {
    TYPE_F32: "f32", TYPE_F16: "f16", TYPE_I64: "i64", TYPE_I32: "i32",
    TYPE_BOOL: "bool", TYPE_BF16: "bf16", TYPE_I16: "i16", TYPE_I8: "i8",
    TYPE_U8: "u8", TYPE_F64: "f64",
}


def dtype_to_type(dtype: torch.dtype, name: str = "") -> int:
    try:
        return _DTYPE_TO_TYPE[dtype]
    except KeyError:
        where = f" of tensor '{name}'" if name else ""
        raise StructuralError(
            f"Don't know how to serialize element type {dtype}{where}"
        ) from None


def type_to_dtype(tensor_type: int) -> torch.dtype:
    try:
        return _TYPE_TO_DTYPE[tensor_type]
    except KeyError:
        raise StructuralError(f"Unknown tensor type code {tensor_type}") from None


def tensor_to_bytes(t: torch.Tensor) -> bytes:
    t = t.detach().contiguous().cpu().reshape(-1)
    return t.view(torch.uint8).numpy().tobytes()


def bytes_to_tensor(data: bytes, dtype: torch.dtype, dims: Sequence[int]) -> torch.Tensor:
    if not data:
        return torch.empty(tuple(dims), dtype=dtype)
    raw = torch.frombuffer(bytearray(data), dtype=torch.uint8)
    return raw.view(dtype).reshape(tuple(dims))


# ---------------------------------------------------------------------------
# Records before serialization
# ---------------------------------------------------------------------------

class IrValue:
    """A tensor crossing into, out of, or baked into the subgraph."""

    __slots__ = (
        "name",
        "tensor_type",
        "dims",
        "is_input",
        "is_output",
        "is_initializer",
        "data",
        "input_index",
    )

    def __init__(
        self,
        name: str,
        tensor_type: int = TYPE_F32,
        dims: Optional[Sequence[int]] = None,
        is_input: bool = False,
        is_output: bool = False,
        is_initializer: bool = False,
        data: Optional[bytes] = None,
        input_index: int = -1,
    ):
        self.name = name
        self.tensor_type = tensor_type
        self.dims = list(dims or [])
        self.is_input = is_input
        self.is_output = is_output
        self.is_initializer = is_initializer
        self.data = data or b""
        self.input_index = input_index

    @property
    def dtype(self) -> torch.dtype:
        return type_to_dtype(self.tensor_type)

    def to_tensor(self) -> torch.Tensor:
        return bytes_to_tensor(self.data, self.dtype, self.dims)


class IrNode:
    __slots__ = ("op_type", "inputs", "outputs", "attrs")

    def __init__(
        self,
        op_type: str,
        inputs: Sequence[str] = (),
        outputs: Sequence[str] = (),
        attrs: Optional[Mapping[str, Any]] = None,
    ):
        self.op_type = op_type
        self.inputs = list(inputs)
        self.outputs = list(outputs)
        self.attrs = dict(attrs or {})


@dataclass
class SubgraphIR:
    values: List[IrValue] = field(default_factory=list)
    nodes: List[IrNode] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def value(self, name: str) -> IrValue:
        for v in self.values:
            if v.name == name:
                return v
        raise KeyError(name)

    @property
    def inputs(self) -> List[IrValue]:
        return sorted((v for v in self.values if v.is_input), key=lambda v: v.input_index)

    @property
    def outputs(self) -> List[IrValue]:
        return [v for v in self.values if v.is_output]

    @property
    def initializers(self) -> List[IrValue]:
        return [v for v in self.values if v.is_initializer]


def _json_default(o):
    if isinstance(o, (bytes, bytearray)):
        return {"__bytes__": len(o)}
    return str(o)


def encode_attrs(attrs: Mapping[str, Any]) -> str:
    return json.dumps(dict(attrs), default=_json_default, sort_keys=True)


# ---------------------------------------------------------------------------
# FlatBuffer serialization
# ---------------------------------------------------------------------------

def serialize_subgraph(ir: SubgraphIR) -> bytes:
    """Serialize a SubgraphIR into a FlatBuffer blob."""
    builder = flatbuffers.Builder(4096)

    value_offsets = []
    for v in ir.values:
        name_off = builder.CreateString(v.name)
        dims_vec = _create_int64_vector(builder, v.dims) if v.dims else None
        data_vec = builder.CreateByteVector(v.data) if v.data else None

        builder.StartObject(8)
        builder.PrependUOffsetTRelativeSlot(0, name_off, 0)
        builder.PrependInt32Slot(1, v.tensor_type, 0)
        if dims_vec is not None:
            builder.PrependUOffsetTRelativeSlot(2, dims_vec, 0)
        builder.PrependBoolSlot(3, v.is_input, False)
        builder.PrependBoolSlot(4, v.is_output, False)
        builder.PrependBoolSlot(5, v.is_initializer, False)
        if data_vec is not None:
            builder.PrependUOffsetTRelativeSlot(6, data_vec, 0)
        builder.PrependInt32Slot(7, v.input_index, -1)
        value_offsets.append(builder.EndObject())

    node_offsets = []
    for n in ir.nodes:
        op_off = builder.CreateString(n.op_type)
        inputs_vec = _create_string_vector(builder, n.inputs)
        outputs_vec = _create_string_vector(builder, n.outputs)
        attrs_off = builder.CreateString(encode_attrs(n.attrs))

        builder.StartObject(4)
        builder.PrependUOffsetTRelativeSlot(0, op_off, 0)
        builder.PrependUOffsetTRelativeSlot(1, inputs_vec, 0)
        builder.PrependUOffsetTRelativeSlot(2, outputs_vec, 0)
        builder.PrependUOffsetTRelativeSlot(3, attrs_off, 0)
        node_offsets.append(builder.EndObject())

    values_vec = _create_offset_vector(builder, value_offsets)
    nodes_vec = _create_offset_vector(builder, node_offsets)
    metadata_off = builder.CreateString(json.dumps(ir.metadata, default=_json_default, sort_keys=True))

    builder.StartObject(3)
    builder.PrependUOffsetTRelativeSlot(0, values_vec, 0)
    builder.PrependUOffsetTRelativeSlot(1, nodes_vec, 0)
    builder.PrependUOffsetTRelativeSlot(2, metadata_off, 0)
    root = builder.EndObject()

    builder.Finish(root)
    return bytes(builder.Output())


def deserialize_subgraph(blob: bytes) -> SubgraphIR:
    """Decode a blob produced by `serialize_subgraph`."""
    buf = bytearray(blob)
    root = Table(buf, encode.Get(packer.uoffset, buf, 0))

    values = []
    for t in _read_tables(root, 0):
        values.append(
            IrValue(
                name=_read_string(t, 0),
                tensor_type=_read_scalar(t, 1, number_types.Int32Flags, 0),
                dims=_read_int64_vector(t, 2),
                is_input=_read_scalar(t, 3, number_types.BoolFlags, False),
                is_output=_read_scalar(t, 4, number_types.BoolFlags, False),
                is_initializer=_read_scalar(t, 5, number_types.BoolFlags, False),
                data=_read_bytes(t, 6),
                input_index=_read_scalar(t, 7, number_types.Int32Flags, -1),
            )
        )

    nodes = []
    for t in _read_tables(root, 1):
        attrs_json = _read_string(t, 3)
        nodes.append(
            IrNode(
                op_type=_read_string(t, 0),
                inputs=_read_string_vector(t, 1),
                outputs=_read_string_vector(t, 2),
                attrs=json.loads(attrs_json) if attrs_json else {},
            )
        )

    metadata_json = _read_string(root, 2)
    return SubgraphIR(
        values=values,
        nodes=nodes,
        metadata=json.loads(metadata_json) if metadata_json else {},
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _create_int64_vector(builder: flatbuffers.Builder, values: Sequence[int]):
    return builder.CreateNumpyVector(np.array(values, dtype=np.int64))


def _create_string_vector(builder: flatbuffers.Builder, values: Sequence[str]):
    offsets = [builder.CreateString(s) for s in values]
    return _create_offset_vector(builder, offsets)


def _create_offset_vector(builder: flatbuffers.Builder, offsets: Sequence[int]):
    builder.StartVector(4, len(offsets), 4)
    for off in reversed(offsets):
        builder.PrependUOffsetTRelative(off)
    return builder.EndVector()


def _slot(t: Table, slot: int) -> int:
    return t.Offset(4 + 2 * slot)


def _read_scalar(t: Table, slot: int, flags, default):
    o = _slot(t, slot)
    return t.Get(flags, o + t.Pos) if o else default


def _read_string(t: Table, slot: int) -> str:
    o = _slot(t, slot)
    return t.String(o + t.Pos).decode("utf-8") if o else ""


def _read_int64_vector(t: Table, slot: int) -> List[int]:
    o = _slot(t, slot)
    if not o:
        return []
    return t.GetVectorAsNumpy(number_types.Int64Flags, o).tolist()


def _read_bytes(t: Table, slot: int) -> bytes:
    o = _slot(t, slot)
    if not o:
        return b""
    start = t.Vector(o)
    return bytes(t.Bytes[start:start + t.VectorLen(o)])


def _read_string_vector(t: Table, slot: int) -> List[str]:
    o = _slot(t, slot)
    if not o:
        return []
    start = t.Vector(o)
    return [t.String(start + j * 4).decode("utf-8") for j in range(t.VectorLen(o))]


def _read_tables(t: Table, slot: int) -> List[Table]:
    o = _slot(t, slot)
    if not o:
        return []
    start = t.Vector(o)
    return [Table(t.Bytes, t.Indirect(start + j * 4)) for j in range(t.VectorLen(o))]
