"""Tests for the subgraph FlatBuffer format."""

import unittest

import torch

from backend_cutting.errors import StructuralError
from backend_cutting.serialize import (
    TYPE_I64,
    IrNode,
    IrValue,
    SubgraphIR,
    deserialize_subgraph,
    dtype_to_type,
    serialize_subgraph,
    tensor_to_bytes,
)


class TestSerializeSubgraph(unittest.TestCase):
    def test_integer_initializer_keeps_its_type(self):
        shape = torch.tensor([2, -1, 1 << 40], dtype=torch.int64)
        ir = SubgraphIR(
            values=[
                IrValue("x", dims=[2, 3], is_input=True, input_index=0),
                IrValue(
                    "shape",
                    tensor_type=dtype_to_type(shape.dtype),
                    dims=[3],
                    is_initializer=True,
                    data=tensor_to_bytes(shape),
                ),
                IrValue("y", dims=[2, 3], is_output=True),
            ],
            nodes=[IrNode("Reshape", ["x", "shape"], ["y"], {"allowzero": 0})],
            metadata={"producer": "test"},
        )

        out = deserialize_subgraph(serialize_subgraph(ir))

        init = out.value("shape")
        self.assertEqual(init.tensor_type, TYPE_I64)
        self.assertTrue(init.is_initializer)
        self.assertTrue(torch.equal(init.to_tensor(), shape))
        self.assertEqual([v.name for v in out.inputs], ["x"])
        self.assertEqual([v.name for v in out.outputs], ["y"])
        self.assertEqual(out.value("x").input_index, 0)
        self.assertEqual(out.value("y").input_index, -1)
        self.assertEqual(out.nodes[0].op_type, "Reshape")
        self.assertEqual(out.nodes[0].inputs, ["x", "shape"])
        self.assertEqual(out.nodes[0].attrs, {"allowzero": 0})
        self.assertEqual(out.metadata, {"producer": "test"})

    def test_bfloat16_bytes(self):
        t = torch.tensor([[1.5, -2.0]], dtype=torch.bfloat16)
        v = IrValue(
            "w",
            tensor_type=dtype_to_type(t.dtype),
            dims=list(t.shape),
            data=tensor_to_bytes(t),
        )
        self.assertEqual(len(v.data), 4)
        self.assertTrue(torch.equal(v.to_tensor(), t))

    def test_unsupported_dtype_is_structural_error(self):
        with self.assertRaisesRegex(StructuralError, "complex"):
            dtype_to_type(torch.complex64, "z")


if __name__ == "__main__":
    unittest.main()
