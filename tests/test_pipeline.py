"""End-to-end lowering onto the reference FlatBuffer backend."""

import unittest

import torch

from backend_cutting import Graph, Node, OpSetSupport, TensorShape, WeightStore, lower_to_backend
from backend_cutting.serialize import deserialize_subgraph
from backend_cutting.subgraph_backend import COMPILED_OP_TYPE


def _mlp():
    graph = Graph(
        nodes=(
            Node("FC", ("x", "W1", "b1"), ("h",)),
            Node("Relu", ("h",), ("r",)),
            Node("Tanh", ("r",), ("t",)),
            Node("FC", ("t", "W2"), ("z",)),
            Node("Softmax", ("z",), ("y",)),
        ),
        external_inputs=("x",),
        external_outputs=("y",),
    )
    store = WeightStore(
        {
            "W1": torch.randn(8, 4),
            "b1": torch.randn(8),
            "W2": torch.randn(3, 8),
            "unrelated": torch.randn(2),
        }
    )
    return graph, store


class TestLowerToBackend(unittest.TestCase):
    def test_cuts_around_unsupported_op(self):
        graph, store = _mlp()

        res = lower_to_backend(
            graph,
            store,
            supported_ops={"FC", "Relu", "Softmax"},
            input_shape_hints={"x": (2, 4)},
        )

        self.assertEqual(
            [n.op_type for n in res.graph.nodes],
            [COMPILED_OP_TYPE, "Tanh", COMPILED_OP_TYPE],
        )
        first, tanh, second = res.graph.nodes
        self.assertEqual(first.inputs, ("x",))
        self.assertEqual(first.outputs, ("r",))
        self.assertEqual(tanh.inputs, ("r",))
        self.assertEqual(second.inputs, ("t",))
        self.assertEqual(second.outputs, ("y",))
        self.assertEqual(second.attrs["output_size_hint_0"], (2, 3))

        # Baked weights are gone, weights the graph never read stay.
        self.assertEqual(sorted(res.pruned_weights), ["W1", "W2", "b1"])
        self.assertEqual(store.names(), ["unrelated"])

        ir = deserialize_subgraph(second.attrs["serialized_engine"])
        self.assertEqual([v.name for v in ir.initializers], ["W2"])

    def test_graph_passes_run_first(self):
        graph, store = _mlp()

        class DropTanh:
            def run(self, g):
                nodes = [
                    n.replace(op_type="Identity") if n.op_type == "Tanh" else n
                    for n in g.nodes
                ]
                return g.with_nodes(nodes)

        res = lower_to_backend(
            graph,
            store,
            graph_passes=[DropTanh()],
            input_shape_hints={"x": (2, 4)},
        )
        self.assertEqual(len(res.graph.nodes), 1)
        self.assertEqual(res.num_partitions, 1)

    def test_bad_graph_pass_result(self):
        graph, store = _mlp()

        class Broken:
            def run(self, g):
                return None

        with self.assertRaises(TypeError):
            lower_to_backend(graph, store, graph_passes=[Broken()])


class TestOpSetSupport(unittest.TestCase):
    def test_rejects_unknown_op(self):
        self.assertFalse(OpSetSupport()(Node("TopK", ("x",), ("y",))))
        self.assertTrue(OpSetSupport()(Node("Relu", ("x",), ("y",))))

    def test_consults_shape_hints(self):
        hints = {
            "i": TensorShape((4,), torch.int64),
            "f": TensorShape((1, 1, 1, 1, 1), torch.float32),
        }
        support = OpSetSupport(max_rank=4).bind(hints)

        self.assertFalse(support(Node("Add", ("i", "i"), ("o",))))
        self.assertFalse(support(Node("Relu", ("f",), ("o",))))
        self.assertTrue(support(Node("Relu", ("unknown",), ("o",))))

    def test_integer_graph_stays_on_runtime(self):
        graph = Graph(
            nodes=(Node("Add", ("a", "b"), ("y",)),),
            external_inputs=("a", "b"),
            external_outputs=("y",),
        )
        res = lower_to_backend(
            graph,
            WeightStore(),
            input_shape_hints={
                "a": TensorShape((3,), torch.int64),
                "b": TensorShape((3,), torch.int64),
            },
        )
        self.assertEqual(res.graph, graph)
        self.assertEqual(res.num_partitions, 0)


if __name__ == "__main__":
    unittest.main()
