import unittest

import torch

from backend_cutting.graph_ir import Graph, Node, TensorShape
from backend_cutting.shape_inference import infer_shapes, unify_shape_hints
from backend_cutting.weight_store import WeightStore


class TestInferShapes(unittest.TestCase):
    def test_fc_relu_chain(self):
        g = Graph(
            nodes=(
                Node("FC", ("x", "W", "b"), ("h",)),
                Node("Relu", ("h",), ("y",)),
            ),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        hints = infer_shapes(
            g,
            {
                "x": TensorShape((2, 4)),
                "W": TensorShape((3, 4)),
                "b": TensorShape((3,)),
            },
        )
        self.assertEqual(hints["h"], TensorShape((2, 3)))
        self.assertEqual(hints["y"], TensorShape((2, 3)))

    def test_conv_with_padding(self):
        g = Graph(
            nodes=(Node("Conv", ("x", "w"), ("y",), {"padding": 1, "stride": 1}),),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        hints = infer_shapes(
            g, {"x": TensorShape((1, 3, 8, 8)), "w": TensorShape((16, 3, 3, 3))}
        )
        self.assertEqual(hints["y"].dims, (1, 16, 8, 8))

    def test_cast_keeps_integer_type(self):
        g = Graph(
            nodes=(Node("Cast", ("x",), ("y",), {"to": "int64"}),),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        hints = infer_shapes(g, {"x": TensorShape((5,))})
        self.assertEqual(hints["y"].dtype, torch.int64)

    def test_concat_and_transpose(self):
        g = Graph(
            nodes=(
                Node("Concat", ("a", "b"), ("c",), {"axis": 1}),
                Node("Transpose", ("c",), ("y",)),
            ),
            external_inputs=("a", "b"),
            external_outputs=("y",),
        )
        hints = infer_shapes(g, {"a": TensorShape((2, 3)), "b": TensorShape((2, 5))})
        self.assertEqual(hints["c"].dims, (2, 8))
        self.assertEqual(hints["y"].dims, (8, 2))

    def test_unknown_op_leaves_downstream_unknown(self):
        g = Graph(
            nodes=(
                Node("Mystery", ("x",), ("a",)),
                Node("Relu", ("a",), ("y",)),
            ),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        hints = infer_shapes(g, {"x": TensorShape((2,))})
        self.assertNotIn("a", hints)
        self.assertNotIn("y", hints)

    def test_failing_rule_is_not_an_error(self):
        g = Graph(
            nodes=(Node("MatMul", ("a", "b"), ("y",)),),
            external_inputs=("a", "b"),
            external_outputs=("y",),
        )
        hints = infer_shapes(g, {"a": TensorShape((2, 3)), "b": TensorShape((4, 5))})
        self.assertNotIn("y", hints)

    def test_seeds_win_over_inference(self):
        g = Graph(
            nodes=(Node("Relu", ("x",), ("y",)),),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        seeded = TensorShape((7,), torch.float16)
        hints = infer_shapes(g, {"x": TensorShape((2,)), "y": seeded})
        self.assertEqual(hints["y"], seeded)


class TestUnifyShapeHints(unittest.TestCase):
    def test_merges_store_hints_and_inference(self):
        g = Graph(
            nodes=(Node("FC", ("x_0", "W"), ("y",)),),
            external_inputs=("x_0",),
            external_outputs=("y",),
        )
        store = WeightStore({"W": torch.zeros(6, 4, dtype=torch.float16)})

        hints = unify_shape_hints(
            g,
            store,
            input_shape_hints={"x": TensorShape((3, 4), torch.float16), "stale": (1,)},
            source_mapping={"x": "x_0"},
        )

        self.assertEqual(hints["W"], TensorShape((6, 4), torch.float16))
        self.assertEqual(hints["x_0"].dims, (3, 4))
        self.assertEqual(hints["y"], TensorShape((3, 6), torch.float16))
        self.assertNotIn("x", hints)
        self.assertNotIn("stale", hints)


if __name__ == "__main__":
    unittest.main()
