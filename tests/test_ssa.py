"""Tests for the SSA rewrite."""

import unittest

import torch

from backend_cutting.errors import StructuralError
from backend_cutting.graph_ir import Graph, Node
from backend_cutting.ssa import SsaRenamer, ssa_rewrite
from backend_cutting.weight_store import WeightStore


def _store(*names):
    return WeightStore({n: torch.zeros(2, 2) for n in names})


class TestSsaRewrite(unittest.TestCase):
    def test_single_writer_graph_is_unchanged(self):
        g = Graph(
            nodes=(
                Node("FC", ("x", "W"), ("h",)),
                Node("Relu", ("h",), ("y",)),
            ),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        res = ssa_rewrite(g, _store("W"))

        self.assertEqual(res.graph, g)
        self.assertEqual(res.weight_mapping, {"W": "W"})
        self.assertEqual(res.source_mapping, {"x": "x", "W": "W"})

    def test_rewrites_multiple_writers(self):
        g = Graph(
            nodes=(
                Node("A", ("x",), ("t",)),
                Node("B", ("t",), ("t",)),
                Node("C", ("t",), ("y",)),
            ),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        res = ssa_rewrite(g, _store())
        a, b, c = res.graph.nodes

        self.assertEqual(a.outputs, ("t_1",))
        self.assertEqual(b.inputs, ("t_1",))
        self.assertEqual(b.outputs, ("t",))
        self.assertEqual(c.inputs, ("t",))
        self.assertEqual(res.graph.external_outputs, ("y",))

    def test_fresh_names_avoid_existing_names(self):
        g = Graph(
            nodes=(
                Node("A", ("x",), ("t_1",)),
                Node("B", ("t_1",), ("t",)),
                Node("C", ("t",), ("t",)),
                Node("D", ("t",), ("y",)),
            ),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        res = ssa_rewrite(g, _store())
        outputs = [n.outputs[0] for n in res.graph.nodes]

        self.assertEqual(outputs, ["t_1", "t_2", "t", "y"])
        self.assertEqual(res.graph.nodes[2].inputs, ("t_2",))
        self.assertEqual(len(set(outputs)), len(outputs))

    def test_external_inputs_are_not_weights(self):
        g = Graph(
            nodes=(Node("FC", ("x", "W"), ("y",)),),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        # "x" happens to be materialized in the store, but it is fed per run.
        res = ssa_rewrite(g, _store("x", "W", "unused"))

        self.assertEqual(res.weight_mapping, {"W": "W"})

    def test_dangling_reference_raises(self):
        g = Graph(
            nodes=(Node("Add", ("x", "missing"), ("y",)),),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        with self.assertRaisesRegex(StructuralError, "missing"):
            ssa_rewrite(g, _store())

    def test_redefined_external_output_raises(self):
        g = Graph(
            nodes=(Node("Relu", ("x",), ("x",)),),
            external_inputs=("x",),
            external_outputs=("x",),
        )
        with self.assertRaises(StructuralError):
            ssa_rewrite(g, _store())

    def test_overwritten_weight_gets_new_version(self):
        g = Graph(
            nodes=(
                Node("Mul", ("W", "x"), ("W",)),
                Node("Add", ("W", "x"), ("y",)),
            ),
            external_inputs=("x",),
            external_outputs=("y",),
        )
        res = ssa_rewrite(g, _store("W"))
        mul, add = res.graph.nodes

        self.assertEqual(mul.inputs, ("W", "x"))
        self.assertEqual(mul.outputs, ("W_1",))
        self.assertEqual(add.inputs, ("W_1", "x"))
        self.assertEqual(res.weight_mapping, {"W": "W"})

    def test_rewrite_is_idempotent(self):
        g = Graph(
            nodes=(
                Node("A", ("x", "W"), ("t",)),
                Node("B", ("t",), ("t",)),
                Node("C", ("t", "t"), ("y", "z")),
            ),
            external_inputs=("x",),
            external_outputs=("y", "z"),
        )
        store = _store("W")
        once = ssa_rewrite(g, store).graph
        twice = ssa_rewrite(once, store).graph

        self.assertEqual(twice.external_inputs, once.external_inputs)
        self.assertEqual(twice.external_outputs, once.external_outputs)
        self.assertEqual(
            [(len(n.inputs), len(n.outputs)) for n in twice.nodes],
            [(len(n.inputs), len(n.outputs)) for n in once.nodes],
        )
        self.assertEqual(twice, once)


class TestSsaRenamerScope(unittest.TestCase):
    def test_name_pools_are_per_instance(self):
        r1, r2 = SsaRenamer(), SsaRenamer()
        self.assertEqual(r1.fresh_name("a"), "a_1")
        self.assertEqual(r1.fresh_name("a"), "a_2")
        self.assertEqual(r2.fresh_name("a"), "a_1")


if __name__ == "__main__":
    unittest.main()
